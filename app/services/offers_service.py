"""促销优惠评估（满减 / 折扣 / 包邮 / 买X送Y）"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import is_within_window
from app.core.money import percent_of
from app.models.offers import Offer, OfferType
from app.schemas.pricing import AppliedOffer, QuoteLine

logger = logging.getLogger(__name__)

MAX_GIFT_QUANTITY = 50


@dataclass
class GiftRequest:
    product_id: int
    variant_id: Optional[int]
    quantity: int
    source: str
    source_id: Optional[int] = None


@dataclass
class OfferResult:
    discount_minor: int = 0
    free_shipping: bool = False
    applied: List[AppliedOffer] = field(default_factory=list)
    gift_requests: List[GiftRequest] = field(default_factory=list)


def eligible_amount_minor(product_ids, category_ids, lines: List[QuoteLine]) -> int:
    """定向金额：未设置定向时为整单，否则只统计命中的商品行"""
    product_set = {int(pid) for pid in (product_ids or [])}
    category_set = {str(cid) for cid in (category_ids or [])}

    total = 0
    for line in lines:
        if not product_set and not category_set:
            total += line.line_total_minor
            continue
        if line.product_id in product_set or (line.category_id and line.category_id in category_set):
            total += line.line_total_minor
    return max(0, total)


def cart_quantity_for(lines: List[QuoteLine], product_id: int, variant_id: Optional[int] = None) -> int:
    quantity = 0
    for line in lines:
        if line.product_id != product_id:
            continue
        if variant_id is not None and line.variant_id != variant_id:
            continue
        quantity += line.quantity
    return quantity


class OffersService:
    """按优先级依次评估生效的促销优惠"""

    def __init__(self, db: Session):
        self.db = db

    def active_offers(self, now: datetime) -> List[Offer]:
        offers = self.db.execute(
            select(Offer)
            .where(Offer.is_active.is_(True))
            .order_by(Offer.priority.asc(), Offer.created_at.desc(), Offer.id.desc())
        ).scalars().all()
        return [o for o in offers if is_within_window(now, o.starts_at, o.ends_at)]

    def evaluate(
        self,
        lines: List[QuoteLine],
        subtotal_after_coupon_minor: int,
        shipping_fee_minor: int,
        now: datetime,
    ) -> OfferResult:
        result = OfferResult()
        if not lines:
            return result

        for offer in self.active_offers(now):
            # 门槛基于券后小计
            if offer.min_total_minor and subtotal_after_coupon_minor < offer.min_total_minor:
                continue

            eligible = eligible_amount_minor(offer.product_ids, offer.category_ids, lines)
            if eligible <= 0:
                continue

            remaining = max(0, subtotal_after_coupon_minor - result.discount_minor)

            if offer.offer_type == OfferType.FREE_SHIPPING:
                if shipping_fee_minor > 0:
                    result.free_shipping = True
                    result.applied.append(self._applied(offer, 0))
            elif offer.offer_type in (OfferType.PERCENT_OFF, OfferType.FIXED_OFF):
                discount = self._monetary_discount(offer, eligible, remaining)
                if discount > 0:
                    result.discount_minor += discount
                    result.applied.append(self._applied(offer, discount))
            elif offer.offer_type == OfferType.BUY_X_GET_Y:
                gift = self._buy_x_get_y(offer, lines)
                if gift is not None:
                    result.gift_requests.append(gift)
                    applied = self._applied(offer, 0)
                    applied.gift_product_id = gift.product_id
                    applied.gift_variant_id = gift.variant_id
                    applied.gift_quantity = gift.quantity
                    result.applied.append(applied)

            if not offer.stackable:
                break

        # 优惠总额不超过券后小计
        result.discount_minor = min(result.discount_minor, max(0, subtotal_after_coupon_minor))
        if result.applied:
            logger.debug(f"命中优惠: {[a.offer_id for a in result.applied]}")
        return result

    @staticmethod
    def _monetary_discount(offer: Offer, eligible_minor: int, remaining_minor: int) -> int:
        if remaining_minor <= 0:
            return 0
        if offer.offer_type == OfferType.PERCENT_OFF:
            discount = percent_of(eligible_minor, offer.value)
        else:
            discount = max(0, int(offer.value or 0))
        if offer.max_discount_minor:
            discount = min(discount, offer.max_discount_minor)
        return min(discount, remaining_minor)

    @staticmethod
    def _buy_x_get_y(offer: Offer, lines: List[QuoteLine]) -> Optional[GiftRequest]:
        if not offer.buy_product_id or not offer.get_product_id:
            return None
        buy_quantity = max(1, offer.buy_quantity or 1)
        get_quantity = max(1, offer.get_quantity or 1)

        in_cart = cart_quantity_for(lines, offer.buy_product_id, offer.buy_variant_id)
        if in_cart < buy_quantity:
            return None

        # 支持倍数：买2送1，购物车有4件则送2件
        multiplier = in_cart // buy_quantity
        return GiftRequest(
            product_id=offer.get_product_id,
            variant_id=offer.get_variant_id,
            quantity=min(MAX_GIFT_QUANTITY, multiplier * get_quantity),
            source="offer",
            source_id=offer.id,
        )

    @staticmethod
    def _applied(offer: Offer, discount_minor: int) -> AppliedOffer:
        return AppliedOffer(
            offer_id=offer.id,
            offer_type=offer.offer_type.value,
            name=offer.name,
            discount_minor=discount_minor,
        )

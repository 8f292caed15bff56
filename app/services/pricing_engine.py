"""定价引擎：购物车行 + 配送方式 + 优惠码 -> 分项报价

计算顺序：单价 -> 库存校验 -> 配送费 -> 全店活动 -> 优惠码 -> 促销优惠 -> 赠品 -> 税费。
所有金额以整数最小货币单位计算，主单位镜像只由最小单位推导。
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import as_utc, is_within_window, utcnow
from app.core.config import settings
from app.core.exceptions import bad_request, out_of_stock_error
from app.core.money import compute_tax, percent_of
from app.models.campaigns import Campaign, CampaignTarget
from app.models.coupon_redemptions import CouponUserUsage
from app.models.coupon_reservations import CouponReservation, CouponReservationStatus
from app.models.coupons import Coupon, DiscountType
from app.models.gift_rules import GiftRule
from app.models.product import Product, ProductVariant
from app.models.shipping_options import DeliveryArea, PickupPoint, StorePickupConfig
from app.schemas.pricing import (
    CampaignDiscount,
    CartLineRequest,
    CouponDiscount,
    Discounts,
    GiftLine,
    GiftWarning,
    OfferDiscount,
    Quote,
    QuoteLine,
    ShippingMode,
    ShippingQuote,
    ShippingSelection,
    TaxBreakdown,
)
from app.services.offers_service import GiftRequest, OffersService, eligible_amount_minor

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 999
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def merge_cart_lines(items: Iterable[CartLineRequest]) -> List[CartLineRequest]:
    """同一商品同一规格的重复行合并"""
    merged: "OrderedDict[Tuple[int, Optional[int]], int]" = OrderedDict()
    for item in items or []:
        key = (item.product_id, item.variant_id)
        quantity = merged.get(key, 0) + item.quantity
        if quantity > MAX_LINE_QUANTITY:
            raise bad_request(
                "INVALID_QUANTITY",
                f"单个商品数量不能超过 {MAX_LINE_QUANTITY}",
                {"product_id": item.product_id, "variant_id": item.variant_id, "requested": quantity},
            )
        merged[key] = quantity
    return [
        CartLineRequest(product_id=pid, variant_id=vid, quantity=qty)
        for (pid, vid), qty in merged.items()
    ]


def effective_unit_price(product: Product, variant: Optional[ProductVariant], now: datetime) -> Tuple[int, bool]:
    """生效单价

    规格价格只有显式设置且为正数时才覆盖商品价格；促销价只在
    sale_price < 原价且当前时间处于可选的时间窗口内时生效。
    """
    base = max(0, int(product.price_minor or 0))
    if variant is not None and variant.price_minor is not None and variant.price_minor > 0:
        base = int(variant.price_minor)

    sale = product.sale_price_minor
    if (
        sale is not None
        and 0 <= sale < (product.price_minor or 0)
        and sale < base
        and is_within_window(now, product.sale_starts_at, product.sale_ends_at)
    ):
        return int(sale), True
    return base, False


def coupon_discount_minor(coupon: Coupon, base_minor: int) -> int:
    if coupon.discount_type == DiscountType.PERCENT:
        amount = percent_of(base_minor, coupon.value)
    else:
        amount = min(base_minor, max(0, int(coupon.value or 0)))
    if coupon.max_discount_minor is not None:
        amount = min(amount, max(0, coupon.max_discount_minor))
    return max(0, min(amount, base_minor))


def coupon_blocked_reason(coupon: Optional[Coupon], now: datetime) -> Optional[str]:
    """优惠券基础有效性（启用 + 时间窗口），返回不可用原因"""
    if coupon is None:
        return "COUPON_NOT_FOUND"
    if not coupon.is_active:
        return "COUPON_INACTIVE"
    if not is_within_window(now, coupon.starts_at, coupon.ends_at):
        return "COUPON_EXPIRED"
    return None


class PricingEngine:
    """报价计算（同一目录状态下结果确定）"""

    def __init__(
        self,
        db: Session,
        vat_rate: Optional[float] = None,
        prices_include_vat: Optional[bool] = None,
        currency: Optional[str] = None,
        production: Optional[bool] = None,
    ):
        self.db = db
        self.vat_rate = settings.vat_rate if vat_rate is None else min(1.0, max(0.0, vat_rate))
        self.prices_include_vat = settings.PRICES_INCLUDE_VAT if prices_include_vat is None else prices_include_vat
        self.currency = currency or settings.CURRENCY
        self.production = settings.is_production if production is None else production
        self.offers = OffersService(db)

    def quote(
        self,
        items: Iterable[CartLineRequest],
        shipping: Optional[ShippingSelection],
        coupon_code: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Quote:
        now = now or utcnow()
        requested = merge_cart_lines(items)
        if not requested:
            raise bad_request("EMPTY_CART", "购物车为空")

        # 1) 单价 + 2) 库存校验
        lines = self._resolve_lines(requested, now)
        subtotal = sum(line.line_total_minor for line in lines)

        # 3) 配送费
        shipping_quote = self._resolve_shipping(shipping or ShippingSelection())

        # 4) 全店活动（最多一个）
        campaign = self._select_campaign(lines, subtotal, now)
        after_campaign = max(0, subtotal - campaign.amount_minor)

        # 5) 优惠码（不满足条件时静默为 0）
        coupon = self._resolve_coupon(coupon_code, after_campaign, user_id, now)
        after_coupon = max(0, after_campaign - coupon.amount_minor)

        # 6) 促销优惠
        offer_result = self.offers.evaluate(lines, after_coupon, shipping_quote.fee_minor, now)
        offer_amount = min(after_coupon, offer_result.discount_minor)
        if offer_result.free_shipping:
            shipping_quote.fee_minor = 0
            shipping_quote.free_shipping = True

        # 7) 赠品
        total_before_shipping = max(0, after_coupon - offer_amount)
        gift_requests = self._rule_gift_requests(lines, total_before_shipping, now)
        gift_requests.extend(offer_result.gift_requests)
        gifts, gift_warnings = self._resolve_gifts(gift_requests, lines)

        # 8) 税费
        net_total = max(0, total_before_shipping + shipping_quote.fee_minor)
        tax = TaxBreakdown(**compute_tax(net_total, self.vat_rate, self.prices_include_vat))

        quote = Quote(
            currency=self.currency,
            lines=lines,
            subtotal_minor=subtotal,
            shipping=shipping_quote,
            discounts=Discounts(
                coupon=coupon,
                campaign=campaign,
                offer=OfferDiscount(
                    amount_minor=offer_amount,
                    free_shipping=offer_result.free_shipping,
                    applied=offer_result.applied,
                ),
            ),
            gifts=gifts,
            gift_warnings=gift_warnings,
            tax=tax,
            grand_total_minor=tax.total_after_tax_minor,
        )
        self._check_identity(quote)
        return quote

    # ------------------------------------------------------------------
    # 商品行
    # ------------------------------------------------------------------

    def _load_catalog(self, product_ids: List[int]) -> Tuple[Dict[int, Product], Dict[int, List[ProductVariant]]]:
        products = self.db.execute(
            select(Product)
            .where(Product.id.in_(product_ids))
            .execution_options(populate_existing=True)
        ).scalars().all()
        variants = self.db.execute(
            select(ProductVariant)
            .where(ProductVariant.product_id.in_(product_ids))
            .execution_options(populate_existing=True)
        ).scalars().all()

        variants_by_product: Dict[int, List[ProductVariant]] = {}
        for variant in variants:
            variants_by_product.setdefault(variant.product_id, []).append(variant)
        return {p.id: p for p in products}, variants_by_product

    def _resolve_lines(self, requested: List[CartLineRequest], now: datetime) -> List[QuoteLine]:
        products, variants_by_product = self._load_catalog(sorted({r.product_id for r in requested}))

        lines: List[QuoteLine] = []
        shortages = []
        for item in requested:
            product = products.get(item.product_id)
            if product is None or not product.is_active:
                raise bad_request(
                    "PRODUCT_UNAVAILABLE",
                    "商品不存在或已下架",
                    {"product_id": item.product_id},
                )

            active_variants = [v for v in variants_by_product.get(product.id, []) if v.is_active]
            variant = None
            if active_variants:
                variant = next((v for v in active_variants if v.id == item.variant_id), None)
                if variant is None:
                    raise bad_request(
                        "VARIANT_REQUIRED",
                        "该商品需要选择规格",
                        {"product_id": product.id, "variant_id": item.variant_id},
                    )
            elif item.variant_id is not None:
                raise bad_request(
                    "PRODUCT_UNAVAILABLE",
                    "商品规格不存在",
                    {"product_id": product.id, "variant_id": item.variant_id},
                )

            if product.track_inventory and not product.allow_backorder:
                available = max(0, (variant.stock if variant is not None else product.stock) or 0)
                if item.quantity > available:
                    # 不静默削减数量
                    shortages.append({
                        "product_id": product.id,
                        "variant_id": variant.id if variant is not None else None,
                        "name": product.name,
                        "requested": item.quantity,
                        "available": available,
                    })
                    continue

            unit_price, on_sale = effective_unit_price(product, variant, now)
            lines.append(QuoteLine(
                product_id=product.id,
                variant_id=variant.id if variant is not None else None,
                sku=variant.sku if variant is not None else product.sku,
                name=product.name,
                variant_name=variant.name if variant is not None else None,
                category_id=product.category_id,
                quantity=item.quantity,
                unit_price_minor=unit_price,
                line_total_minor=unit_price * item.quantity,
                on_sale=on_sale,
            ))

        if shortages:
            raise out_of_stock_error(shortages)
        return lines

    # ------------------------------------------------------------------
    # 配送
    # ------------------------------------------------------------------

    def _resolve_shipping(self, shipping: ShippingSelection) -> ShippingQuote:
        mode = shipping.mode
        if mode is None:
            raise bad_request("INVALID_SHIPPING_MODE", "请选择配送方式")

        if mode == ShippingMode.DELIVERY:
            area = self.db.get(DeliveryArea, shipping.delivery_area_id) if shipping.delivery_area_id else None
            if area is None or not area.is_active:
                raise bad_request(
                    "INVALID_SHIPPING_AREA",
                    "配送区域不存在或已停用",
                    {"delivery_area_id": shipping.delivery_area_id},
                )
            return ShippingQuote(
                mode=mode,
                option_id=area.id,
                name=area.name,
                address=shipping.address,
                base_fee_minor=area.fee_minor,
                fee_minor=area.fee_minor,
            )

        if mode == ShippingMode.PICKUP_POINT:
            point = self.db.get(PickupPoint, shipping.pickup_point_id) if shipping.pickup_point_id else None
            if point is None or not point.is_active:
                raise bad_request(
                    "INVALID_SHIPPING_PICKUP_POINT",
                    "自提点不存在或已停用",
                    {"pickup_point_id": shipping.pickup_point_id},
                )
            return ShippingQuote(
                mode=mode,
                option_id=point.id,
                name=point.name,
                address=point.address,
                base_fee_minor=point.fee_minor,
                fee_minor=point.fee_minor,
            )

        config = self.db.execute(
            select(StorePickupConfig).order_by(StorePickupConfig.id.desc()).limit(1)
        ).scalar_one_or_none()
        if config is None or not config.is_enabled:
            raise bad_request("INVALID_SHIPPING_STORE_PICKUP", "门店自提未开放")
        return ShippingQuote(
            mode=mode,
            option_id=config.id,
            name="store_pickup",
            address=config.address,
            base_fee_minor=config.fee_minor,
            fee_minor=config.fee_minor,
        )

    # ------------------------------------------------------------------
    # 活动 / 优惠码
    # ------------------------------------------------------------------

    def _select_campaign(self, lines: List[QuoteLine], subtotal: int, now: datetime) -> CampaignDiscount:
        campaigns = self.db.execute(
            select(Campaign).where(Campaign.is_active.is_(True))
        ).scalars().all()

        candidates = []
        for campaign in campaigns:
            if not is_within_window(now, campaign.starts_at, campaign.ends_at):
                continue
            if campaign.applies_to == CampaignTarget.PRODUCTS:
                eligible = eligible_amount_minor(campaign.product_ids, [], lines) if campaign.product_ids else 0
            elif campaign.applies_to == CampaignTarget.CATEGORIES:
                eligible = eligible_amount_minor([], campaign.category_ids, lines) if campaign.category_ids else 0
            else:
                eligible = subtotal

            if campaign.discount_type == DiscountType.PERCENT:
                potential = percent_of(eligible, campaign.value)
            else:
                potential = min(eligible, max(0, int(campaign.value or 0)))
            candidates.append((campaign, min(potential, subtotal)))

        if not candidates:
            return CampaignDiscount()

        # 优先级升序 -> 折扣金额降序 -> 创建时间降序
        candidates.sort(key=lambda c: (
            c[0].priority if c[0].priority is not None else 100,
            -c[1],
            -(as_utc(c[0].created_at) or _EPOCH).timestamp(),
            -c[0].id,
        ))
        winner, amount = candidates[0]
        if amount <= 0:
            return CampaignDiscount()
        return CampaignDiscount(campaign_id=winner.id, name=winner.name, amount_minor=amount)

    def _resolve_coupon(
        self,
        code: Optional[str],
        base_minor: int,
        user_id: Optional[str],
        now: datetime,
    ) -> CouponDiscount:
        normalized = normalize_code(code)
        if not normalized:
            return CouponDiscount()

        coupon = self.db.execute(
            select(Coupon)
            .where(Coupon.code == normalized)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        reason = coupon_blocked_reason(coupon, now)
        if reason is None and base_minor < (coupon.min_order_total_minor or 0):
            reason = "COUPON_MIN_ORDER_NOT_MET"
        if reason is None and coupon.usage_limit is not None:
            # 预占中的次数也占用容量
            if (coupon.used_count or 0) + (coupon.reserved_count or 0) >= coupon.usage_limit:
                reason = "COUPON_LIMIT_REACHED"
        if reason is None and user_id and coupon.usage_per_user is not None:
            used = self.db.execute(
                select(CouponUserUsage.used_count).where(
                    CouponUserUsage.coupon_id == coupon.id,
                    CouponUserUsage.user_id == user_id,
                )
            ).scalar_one_or_none() or 0
            # 该用户在其它待支付订单上的预占也算一次
            held = self.db.execute(
                select(func.count(CouponReservation.id)).where(
                    CouponReservation.coupon_id == coupon.id,
                    CouponReservation.user_id == user_id,
                    CouponReservation.status == CouponReservationStatus.ACTIVE,
                )
            ).scalar_one()
            if used + held >= coupon.usage_per_user:
                reason = "COUPON_USER_LIMIT_REACHED"

        if reason is not None:
            logger.info(f"优惠码不可用，按 0 折扣处理: code={normalized}, reason={reason}")
            return CouponDiscount()

        return CouponDiscount(code=coupon.code, amount_minor=coupon_discount_minor(coupon, base_minor))

    # ------------------------------------------------------------------
    # 赠品
    # ------------------------------------------------------------------

    def _rule_gift_requests(self, lines: List[QuoteLine], total_minor: int, now: datetime) -> List[GiftRequest]:
        rules = self.db.execute(
            select(GiftRule)
            .where(GiftRule.is_active.is_(True))
            .order_by(GiftRule.created_at.desc(), GiftRule.id.desc())
            .limit(20)
        ).scalars().all()

        cart_products = {line.product_id for line in lines}
        cart_categories = {line.category_id for line in lines if line.category_id}

        requests = []
        for rule in rules:
            if not is_within_window(now, rule.starts_at, rule.ends_at):
                continue
            if rule.min_order_total_minor is not None and total_minor < rule.min_order_total_minor:
                continue
            if rule.required_product_id and rule.required_product_id not in cart_products:
                continue
            if rule.required_category_id and rule.required_category_id not in cart_categories:
                continue
            requests.append(GiftRequest(
                product_id=rule.gift_product_id,
                variant_id=None,
                quantity=1,
                source="rule",
                source_id=rule.id,
            ))
        return requests

    def _resolve_gifts(
        self,
        requests: List[GiftRequest],
        lines: List[QuoteLine],
    ) -> Tuple[List[GiftLine], List[GiftWarning]]:
        if not requests:
            return [], []

        # 同一商品同一规格的赠品合并
        merged: "OrderedDict[Tuple[int, Optional[int]], GiftRequest]" = OrderedDict()
        for req in requests:
            key = (req.product_id, req.variant_id)
            if key in merged:
                merged[key].quantity = min(99, merged[key].quantity + req.quantity)
            else:
                merged[key] = GiftRequest(req.product_id, req.variant_id, req.quantity, req.source, req.source_id)

        products, variants_by_product = self._load_catalog(sorted({k[0] for k in merged}))
        in_cart = {}
        for line in lines:
            key = (line.product_id, line.variant_id)
            in_cart[key] = in_cart.get(key, 0) + line.quantity

        gifts: List[GiftLine] = []
        warnings: List[GiftWarning] = []
        for (product_id, variant_id), req in merged.items():
            product = products.get(product_id)
            if product is None or not product.is_active:
                warnings.append(GiftWarning(
                    type="GIFT_PRODUCT_NOT_FOUND",
                    product_id=product_id,
                    variant_id=variant_id,
                    requested_quantity=req.quantity,
                    message="赠品商品不存在或已下架",
                ))
                continue

            variant = None
            if variant_id is not None:
                variant = next(
                    (v for v in variants_by_product.get(product_id, []) if v.id == variant_id and v.is_active),
                    None,
                )
                if variant is None:
                    warnings.append(GiftWarning(
                        type="GIFT_VARIANT_NOT_FOUND",
                        product_id=product_id,
                        variant_id=variant_id,
                        requested_quantity=req.quantity,
                        message="赠品规格不存在",
                    ))
                    continue

            if product.track_inventory and not product.allow_backorder:
                stock = (variant.stock if variant is not None else product.stock) or 0
                # 扣除购物车中同款商品占用的数量（两者在同一预占条目中扣减）
                available = max(0, stock - in_cart.get((product_id, variant_id), 0))
            else:
                available = req.quantity

            granted = min(req.quantity, available)
            if granted <= 0:
                warnings.append(GiftWarning(
                    type="GIFT_OUT_OF_STOCK",
                    product_id=product_id,
                    variant_id=variant_id,
                    requested_quantity=req.quantity,
                    available_quantity=0,
                    message=f"赠品「{product.name}」已无库存",
                ))
                continue
            if granted < req.quantity:
                warnings.append(GiftWarning(
                    type="GIFT_PARTIAL_STOCK",
                    product_id=product_id,
                    variant_id=variant_id,
                    requested_quantity=req.quantity,
                    available_quantity=available,
                    granted_quantity=granted,
                    message=f"赠品「{product.name}」库存不足，仅赠送 {granted} 件",
                ))

            gifts.append(GiftLine(
                product_id=product_id,
                variant_id=variant_id,
                name=product.name,
                quantity=granted,
                source=req.source,
            ))
        return gifts, warnings

    # ------------------------------------------------------------------
    # 金额恒等式
    # ------------------------------------------------------------------

    def _check_identity(self, quote: Quote):
        tax = quote.tax
        expected_grand = max(
            0,
            quote.subtotal_minor - quote.discounts.total_minor + quote.shipping_fee_minor + tax.tax_added_minor,
        )
        tax_ok = tax.total_before_tax_minor + tax.tax_minor == tax.total_after_tax_minor
        if tax_ok and expected_grand == quote.grand_total_minor:
            return
        message = (
            f"金额恒等式校验失败: before={tax.total_before_tax_minor}, tax={tax.tax_minor}, "
            f"after={tax.total_after_tax_minor}, grand={quote.grand_total_minor}, expected={expected_grand}"
        )
        logger.error(message)
        if not self.production:
            raise AssertionError(message)


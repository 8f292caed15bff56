"""订单聚合：金额不变式与状态机

每次写入前都用 recompute_invariants 从商品行和子快照重新计算金额：
未进入财务承诺状态时直接覆盖为重算值；已承诺后锁定字段不允许变化。
"""

import copy
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import bad_request, conflict, not_found
from app.core.money import compute_tax, with_major
from app.models.orders import Order, OrderStatus, PaymentMethod, PaymentStatus, StockStatus
from app.schemas.pricing import Quote

logger = logging.getLogger(__name__)

LOCKED_PATHS = ("items", "gifts", "pricing", "shipping")

COMMITTED_STATUSES = {
    OrderStatus.PAYMENT_RECEIVED,
    OrderStatus.STOCK_CONFIRMED,
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.PARTIALLY_REFUNDED,
    OrderStatus.REFUNDED,
}

_REFUNDS = {OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED}

ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.DRAFT: {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_COD, OrderStatus.CANCELLED},
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAYMENT_RECEIVED, OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.PENDING_COD: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_RECEIVED: {OrderStatus.STOCK_CONFIRMED, OrderStatus.CONFIRMED, OrderStatus.CANCELLED} | _REFUNDS,
    OrderStatus.STOCK_CONFIRMED: {OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.CANCELLED} | _REFUNDS,
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED} | _REFUNDS,
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED} | _REFUNDS,
    OrderStatus.DELIVERED: set(_REFUNDS),
    OrderStatus.PARTIALLY_REFUNDED: set(_REFUNDS),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

# 进入这些状态要求已收款（在线支付）
PAYMENT_REQUIRED_STATUSES = {OrderStatus.PAYMENT_RECEIVED}
# 进入这些状态要求库存已确认
STOCK_REQUIRED_STATUSES = {OrderStatus.STOCK_CONFIRMED, OrderStatus.CONFIRMED}


def is_financially_committed(order: Order) -> bool:
    return order.payment_captured_at is not None or order.status in COMMITTED_STATUSES


def snapshot_from_quote(quote: Quote) -> dict:
    """把报价复制为订单快照（报价本身不落库）"""
    items = [with_major(line.model_dump(exclude={"unit_price_major", "line_total_major"})) for line in quote.lines]
    gifts = [gift.model_dump() for gift in quote.gifts]
    shipping = quote.shipping.model_dump(exclude={"fee_major"})
    discounts = quote.discounts
    pricing = {
        "currency": quote.currency,
        "subtotal_minor": quote.subtotal_minor,
        "shipping_fee_minor": quote.shipping.fee_minor,
        "discounts": {
            "coupon": {"code": discounts.coupon.code, "amount_minor": discounts.coupon.amount_minor},
            "campaign": {
                "campaign_id": discounts.campaign.campaign_id,
                "name": discounts.campaign.name,
                "amount_minor": discounts.campaign.amount_minor,
            },
            "offer": {
                "amount_minor": discounts.offer.amount_minor,
                "free_shipping": discounts.offer.free_shipping,
                "applied": [a.model_dump() for a in discounts.offer.applied],
            },
            "total_minor": discounts.total_minor,
        },
        "tax": {
            "rate": quote.tax.rate,
            "included_in_prices": quote.tax.included_in_prices,
            "tax_minor": quote.tax.tax_minor,
            "total_before_tax_minor": quote.tax.total_before_tax_minor,
            "total_after_tax_minor": quote.tax.total_after_tax_minor,
            "tax_added_minor": quote.tax.tax_added_minor,
        },
        "grand_total_minor": quote.grand_total_minor,
    }
    return {
        "items": items,
        "gifts": gifts,
        "shipping": shipping,
        "pricing": recompute_pricing(items, pricing),
    }


def recompute_pricing(items: List[dict], pricing: dict) -> dict:
    """根据商品行和子快照重算金额字段（纯函数，不修改入参）"""
    result = copy.deepcopy(pricing or {})

    lines = []
    for item in items or []:
        line = dict(item)
        line["line_total_minor"] = int(line.get("unit_price_minor", 0)) * int(line.get("quantity", 0))
        lines.append(with_major(line))
    subtotal = sum(line["line_total_minor"] for line in lines)

    discounts = result.setdefault("discounts", {})
    discount_total = sum(
        int((discounts.get(name) or {}).get("amount_minor") or 0)
        for name in ("coupon", "campaign", "offer")
    )
    discount_total = min(discount_total, subtotal)
    discounts["total_minor"] = discount_total
    discounts["total_major"] = with_major({"total_minor": discount_total})["total_major"]

    shipping_fee = max(0, int(result.get("shipping_fee_minor") or 0))
    tax_snapshot = result.get("tax") or {}
    inclusive = bool(tax_snapshot.get("included_in_prices", True))
    tax = compute_tax(max(0, subtotal - discount_total + shipping_fee), tax_snapshot.get("rate", 0), inclusive)
    tax["tax_added_minor"] = 0 if inclusive else tax["tax_minor"]

    result["subtotal_minor"] = subtotal
    result["shipping_fee_minor"] = shipping_fee
    result["tax"] = with_major(tax)
    result["grand_total_minor"] = tax["total_after_tax_minor"]
    result["_lines"] = lines
    return with_major(result)


def recompute_invariants(snapshot: dict) -> dict:
    """recompute_pricing 的整单版本：返回重算后的 items / pricing"""
    result = copy.deepcopy(snapshot)
    pricing = recompute_pricing(result.get("items") or [], result.get("pricing") or {})
    result["items"] = pricing.pop("_lines")
    result["pricing"] = pricing
    return result


def _strip(pricing: dict) -> dict:
    pricing = dict(pricing or {})
    pricing.pop("_lines", None)
    return pricing


def assert_not_locked(order: Order, changed_paths: Iterable[str]):
    """订单已进入财务承诺状态时，锁定字段不允许修改"""
    locked = sorted(set(changed_paths) & set(LOCKED_PATHS))
    if locked and is_financially_committed(order):
        raise conflict(
            "ORDER_SNAPSHOTS_LOCKED",
            "订单已付款/已确认，金额快照不可修改",
            {"order_id": order.id, "paths": locked},
        )


def changed_snapshot_paths(order: Order) -> List[str]:
    """上次 flush 之后被重新赋值的锁定字段"""
    state = inspect(order)
    if not state.persistent:
        return []
    changed = []
    for path in LOCKED_PATHS:
        history = state.attrs[path].history
        if not history.added:
            continue
        if history.deleted and history.added[0] == history.deleted[0]:
            continue
        changed.append(path)
    return changed


class OrderAggregate:
    """订单唯一的写入入口

    服务层对订单的任何修改都要经过 update / transition / apply_changes，
    它们最后都调用 guard。
    """

    def __init__(self, db: Session):
        self.db = db

    def guard(self, order: Order) -> Order:
        """写入前校验：先重算金额，再检查锁定字段"""
        recomputed = recompute_invariants({
            "items": order.items,
            "gifts": order.gifts,
            "shipping": order.shipping,
            "pricing": order.pricing,
        })
        if is_financially_committed(order):
            changed = set(changed_snapshot_paths(order))
            # 已落库的改动没有属性历史，靠与重算值比较发现
            changed.update(path for path in ("items", "pricing") if recomputed[path] != getattr(order, path))
            assert_not_locked(order, changed)
            return order

        # 只在值不同时赋值，避免产生多余的属性历史
        if recomputed["items"] != order.items:
            order.items = recomputed["items"]
        if recomputed["pricing"] != order.pricing:
            order.pricing = recomputed["pricing"]
        return order

    def update(self, order: Order, **fields) -> Order:
        """修改订单的非状态字段（库存 / 支付 / 物流等）"""
        for key, value in fields.items():
            if key in ("status", "id"):
                raise bad_request("INVALID_ORDER_CHANGE", f"字段 {key} 只能通过状态机修改")
            setattr(order, key, value)
        return self.guard(order)

    def get(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise not_found("ORDER_NOT_FOUND", "订单不存在", {"order_id": order_id})
        return order

    def find_by_idempotency(self, user_id: str, payment_method: PaymentMethod, key: str) -> Optional[Order]:
        return (
            self.db.query(Order)
            .filter(
                Order.user_id == user_id,
                Order.payment_method == payment_method,
                Order.idempotency_key == key,
            )
            .populate_existing()
            .one_or_none()
        )

    def create(
        self,
        quote: Quote,
        user_id: str,
        payment_method: PaymentMethod,
        idempotency_key: str,
        coupon_code: Optional[str] = None,
        order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """以报价快照创建 draft 订单（只 add，不 flush）"""
        now = now or utcnow()
        snapshot = recompute_invariants(snapshot_from_quote(quote))
        order = Order(
            id=order_id or uuid.uuid4().hex,
            user_id=user_id,
            payment_method=payment_method,
            idempotency_key=idempotency_key,
            status=OrderStatus.DRAFT,
            stock_status=StockStatus.NONE,
            payment_status=PaymentStatus.UNPAID,
            currency=quote.currency,
            items=snapshot["items"],
            gifts=snapshot["gifts"],
            pricing=snapshot["pricing"],
            shipping=snapshot["shipping"],
            coupon_code=coupon_code if quote.discounts.coupon.amount_minor > 0 else None,
            refunded_minor=0,
            status_history=[{"status": OrderStatus.DRAFT.value, "at": now.isoformat(), "actor": "system"}],
        )
        self.db.add(order)
        return order

    def apply_changes(self, order: Order, changes: dict) -> Order:
        """修改订单快照并重算金额

        未承诺：调用方给出的金额直接被重算值覆盖；
        已承诺：重算后与当前值不一致即拒绝。
        """
        changed = [path for path in changes if path in LOCKED_PATHS]
        proposed = {
            "items": changes.get("items", order.items),
            "gifts": changes.get("gifts", order.gifts),
            "shipping": changes.get("shipping", order.shipping),
            "pricing": changes.get("pricing", order.pricing),
        }
        recomputed = recompute_invariants(proposed)

        if is_financially_committed(order):
            current = {
                "items": order.items,
                "gifts": order.gifts,
                "shipping": order.shipping,
                "pricing": order.pricing,
            }
            differs = [path for path in changed if recomputed.get(path) != current.get(path)]
            assert_not_locked(order, differs)
        else:
            if changes.get("pricing") and _strip(changes["pricing"]) != recomputed["pricing"]:
                logger.info(f"订单金额与重算结果不一致，已覆盖: order_id={order.id}")
            order.items = recomputed["items"]
            order.gifts = recomputed["gifts"]
            order.shipping = recomputed["shipping"]
            order.pricing = recomputed["pricing"]

        for key, value in changes.items():
            if key in LOCKED_PATHS:
                continue
            if key in ("status", "id", "payment_captured_at", "stock_status"):
                raise bad_request("INVALID_ORDER_CHANGE", f"字段 {key} 只能通过状态机修改")
            setattr(order, key, value)
        return self.guard(order)

    def transition(
        self,
        order: Order,
        status: OrderStatus,
        actor: str = "system",
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """状态迁移（先校验迁移表，再校验进入条件）"""
        now = now or utcnow()
        current = order.status
        if status == current and status != OrderStatus.PARTIALLY_REFUNDED:
            return order
        if status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise conflict(
                "INVALID_STATUS_TRANSITION",
                f"订单状态不能从 {current.value} 变为 {status.value}",
                {"order_id": order.id, "from": current.value, "to": status.value},
            )

        needs_payment = status in PAYMENT_REQUIRED_STATUSES or (
            order.payment_method == PaymentMethod.ONLINE and status in STOCK_REQUIRED_STATUSES
        )
        if needs_payment and order.payment_captured_at is None:
            raise conflict("PAYMENT_NOT_CAPTURED", "订单尚未收款", {"order_id": order.id})
        if status in STOCK_REQUIRED_STATUSES and order.stock_status != StockStatus.CONFIRMED:
            raise conflict("STOCK_NOT_CONFIRMED", "订单库存尚未确认", {"order_id": order.id})

        if status == OrderStatus.CANCELLED:
            if order.cancelled_at is None:
                order.cancelled_at = now
            if not order.cancel_reason:
                order.cancel_reason = note or "cancelled"
            if not order.cancelled_by:
                order.cancelled_by = actor

        order.status = status
        history = list(order.status_history or [])
        entry = {"status": status.value, "at": now.isoformat(), "actor": actor}
        if note:
            entry["note"] = note
        history.append(entry)
        order.status_history = history
        logger.info(f"订单状态变更: order_id={order.id}, {current.value} -> {status.value}, actor={actor}")
        return self.guard(order)

    def set_tracking(self, order: Order, tracking_number: str, carrier: Optional[str] = None) -> Order:
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise conflict("INVALID_STATUS_TRANSITION", "已取消或已退款的订单不能填写物流", {"order_id": order.id})
        fields = {"tracking_number": tracking_number}
        if carrier is not None:
            fields["carrier"] = carrier
        return self.update(order, **fields)

    def record_refund(self, order: Order, amount_minor: int, actor: str = "system", now: Optional[datetime] = None) -> Order:
        """登记退款金额，自动迁移到部分退款 / 全额退款"""
        grand_total = int((order.pricing or {}).get("grand_total_minor") or 0)
        if amount_minor <= 0:
            raise bad_request("INVALID_REFUND_AMOUNT", "退款金额必须大于 0")
        refunded = int(order.refunded_minor or 0) + amount_minor
        if refunded > grand_total:
            raise bad_request("INVALID_REFUND_AMOUNT", "退款金额超过订单总额", {"refundable_minor": grand_total - (order.refunded_minor or 0)})

        target = OrderStatus.REFUNDED if refunded == grand_total else OrderStatus.PARTIALLY_REFUNDED
        self.transition(order, target, actor=actor, note=f"refund {amount_minor}", now=now)
        fields = {"refunded_minor": refunded}
        if target == OrderStatus.REFUNDED:
            fields["payment_status"] = PaymentStatus.REFUNDED
        return self.update(order, **fields)

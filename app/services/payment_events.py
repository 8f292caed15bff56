"""支付回调事件处理

同一事件可能被网关重复投递，按事件ID在 idempotency_keys 表去重：
SUCCESS 直接返回上次结果，PROCESSING 视为并发处理中，FAILED 允许重试。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from redis import Redis
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import CheckoutError, bad_request, conflict, not_found
from app.db.transaction import savepoint
from app.models.idempotency_keys import IdempotencyKey, IdempotencyStatus
from app.models.orders import Order, OrderStatus, PaymentStatus, StockStatus
from app.services.discount_ledger import DiscountLedger
from app.services.inventory_ledger import InventoryLedger
from app.services.order_aggregate import OrderAggregate
from app.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

EVENT_KEY_PREFIX = "payment_event:"
EVENT_KEY_RETENTION_DAYS = 30

SUCCEEDED = "payment.succeeded"
FAILED = "payment.failed"
EXPIRED = "payment.expired"
EVENT_TYPES = (SUCCEEDED, FAILED, EXPIRED)

# 确认库存失败时尝试重新预占的错误
_RESERVATION_LOST = {"RESERVATION_EXPIRED", "RESERVATION_NOT_ACTIVE", "RESERVATION_NOT_FOUND"}
# 已收款后核销优惠券失败只记录，不阻塞订单
_COUPON_UNAVAILABLE = {"COUPON_LIMIT_REACHED", "COUPON_USER_LIMIT_REACHED", "COUPON_INACTIVE", "COUPON_EXPIRED"}


@dataclass
class PaymentEventResult:
    event_id: str
    order_id: str
    status: str
    stock_status: str
    payment_status: str
    already: bool = False

    def to_snapshot(self) -> dict:
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "status": self.status,
            "stock_status": self.stock_status,
            "payment_status": self.payment_status,
        }


class PaymentEventService:

    def __init__(self, db: Session, gateway: PaymentGateway, redis: Optional[Redis] = None):
        self.db = db
        self.gateway = gateway
        self.inventory = InventoryLedger(db, redis=redis, source="payment_event")
        self.discounts = DiscountLedger(db)
        self.orders = OrderAggregate(db)

    def process(
        self,
        event_id: str,
        event_type: str,
        session_handle: Optional[str] = None,
        order_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentEventResult:
        if event_type not in EVENT_TYPES:
            raise bad_request("INVALID_PAYMENT_EVENT", f"不支持的事件类型: {event_type}")
        if not session_handle and not order_id:
            raise bad_request("INVALID_PAYMENT_EVENT", "事件缺少支付会话或订单ID")

        now = now or utcnow()
        key = f"{EVENT_KEY_PREFIX}{event_id}"
        replay = self._claim(key, event_type, order_id, now)
        if replay is not None:
            logger.info(f"支付事件重复投递，返回上次结果: event_id={event_id}")
            return PaymentEventResult(**replay, already=True)

        try:
            order = self._find_order(order_id, session_handle)
            if event_type == SUCCEEDED:
                self._on_succeeded(order, now)
            else:
                self._on_failed(order, event_type, now)
            result = PaymentEventResult(
                event_id=event_id,
                order_id=order.id,
                status=order.status.value,
                stock_status=order.stock_status.value,
                payment_status=order.payment_status.value,
            )
            self._finish(key, IdempotencyStatus.SUCCESS, result.to_snapshot(), order_id=order.id)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self._finish(key, IdempotencyStatus.FAILED, None, error=getattr(e, "code", type(e).__name__))
            self.db.commit()
            raise

        logger.info(f"支付事件处理完成: event_id={event_id}, order_id={result.order_id}, status={result.status}")
        return result

    # ------------------------------------------------------------------
    # 幂等
    # ------------------------------------------------------------------

    def _claim(self, key: str, event_type: str, order_id: Optional[str], now: datetime) -> Optional[dict]:
        """占用事件键；已成功处理过时返回上次的结果快照"""
        record = self.db.execute(
            select(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if record is None:
            try:
                with savepoint(self.db):
                    self.db.add(IdempotencyKey(
                        key=key,
                        status=IdempotencyStatus.PROCESSING,
                        event_type=event_type,
                        order_id=order_id,
                        expires_at=now + timedelta(days=EVENT_KEY_RETENTION_DAYS),
                    ))
                self.db.commit()
                return None
            except IntegrityError:
                record = self.db.execute(
                    select(IdempotencyKey)
                    .where(IdempotencyKey.key == key)
                    .execution_options(populate_existing=True)
                ).scalar_one()

        if record.status == IdempotencyStatus.SUCCESS:
            return record.response_snapshot
        if record.status == IdempotencyStatus.PROCESSING:
            raise conflict("PAYMENT_EVENT_IN_PROGRESS", "该支付事件正在处理中", {"key": key})

        # 上次失败，允许重试
        retried = self.db.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key, IdempotencyKey.status == IdempotencyStatus.FAILED)
            .values(status=IdempotencyStatus.PROCESSING, attempts=IdempotencyKey.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if retried.rowcount != 1:
            raise conflict("PAYMENT_EVENT_IN_PROGRESS", "该支付事件正在处理中", {"key": key})
        return None

    def _finish(
        self,
        key: str,
        status: IdempotencyStatus,
        snapshot: Optional[dict],
        order_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        values = {"status": status, "response_snapshot": snapshot, "last_error": error}
        if order_id:
            values["order_id"] = order_id
        self.db.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # 事件处理
    # ------------------------------------------------------------------

    def _find_order(self, order_id: Optional[str], session_handle: Optional[str]) -> Order:
        if order_id:
            return self.orders.get(order_id)
        order = self.db.execute(
            select(Order).where(Order.payment_session_id == session_handle)
        ).scalar_one_or_none()
        if order is None:
            raise not_found("ORDER_NOT_FOUND", "支付会话对应的订单不存在", {"session": session_handle})
        return order

    def _on_succeeded(self, order: Order, now: datetime):
        if not order.payment_session_id:
            raise conflict("PAYMENT_NOT_CAPTURED", "订单没有支付会话", {"order_id": order.id})
        session = self.gateway.retrieve_session(order.payment_session_id)
        if session.status != "paid":
            raise conflict(
                "PAYMENT_NOT_CAPTURED",
                "支付网关未确认收款",
                {"order_id": order.id, "session_status": session.status},
            )

        self.orders.update(
            order,
            payment_captured_at=order.payment_captured_at or now,
            payment_status=PaymentStatus.CAPTURED,
        )

        if order.status == OrderStatus.CANCELLED:
            # 订单已取消后才到账，只记录收款，由人工退款
            logger.error(f"已取消订单收到付款，需要人工退款: order_id={order.id}")
            return
        if order.status == OrderStatus.PENDING_PAYMENT:
            self.orders.transition(order, OrderStatus.PAYMENT_RECEIVED, actor="payment_gateway", now=now)

        if order.stock_status != StockStatus.CONFIRMED:
            self._confirm_stock(order, now)
        if order.coupon_code:
            self._consume_coupon(order, now)

        if order.stock_status == StockStatus.CONFIRMED and order.status == OrderStatus.PAYMENT_RECEIVED:
            self.orders.transition(order, OrderStatus.CONFIRMED, actor="payment_gateway", now=now)

    def _confirm_stock(self, order: Order, now: datetime):
        try:
            self.inventory.confirm(order.id, now=now)
        except CheckoutError as e:
            if e.code not in _RESERVATION_LOST:
                raise
            # 支付晚于预占过期：按订单快照重新预占
            logger.warning(f"支付到账时预占已失效，尝试重新预占: order_id={order.id}, reason={e.code}")
            items = [
                {"product_id": i["product_id"], "variant_id": i.get("variant_id"), "quantity": i["quantity"]}
                for i in list(order.items or []) + list(order.gifts or [])
            ]
            try:
                self.inventory.reserve(order.id, items, now=now)
                self.inventory.confirm(order.id, now=now)
            except CheckoutError as retry_error:
                if retry_error.code not in ("OUT_OF_STOCK", "OUT_OF_STOCK_PARTIAL"):
                    raise
                self.orders.update(order, stock_status=StockStatus.FAILED)
                logger.error(f"已收款订单库存不足，需要人工处理: order_id={order.id}, details={retry_error.details}")
                return
        self.orders.update(order, stock_status=StockStatus.CONFIRMED)

    def _consume_coupon(self, order: Order, now: datetime):
        discount = int(((order.pricing or {}).get("discounts") or {}).get("coupon", {}).get("amount_minor") or 0)
        try:
            self.discounts.consume(order.coupon_code, order.id, user_id=order.user_id, now=now, discount_minor=discount)
        except CheckoutError as e:
            if e.code in _COUPON_UNAVAILABLE:
                # 已经收款，不能因为优惠券回滚；归还预占，记录后人工处理差额
                self.discounts.release(order.coupon_code, order.id)
                logger.error(
                    f"已收款订单无法核销优惠券: order_id={order.id}, code={order.coupon_code}, reason={e.code}"
                )
                return
            if e.code != "RESERVATION_NOT_FOUND":
                raise
            logger.warning(f"优惠券预占已丢失，改为直接核销: order_id={order.id}, code={order.coupon_code}")
            try:
                self.discounts.consume_direct(
                    order.coupon_code, order.id, user_id=order.user_id, now=now, discount_minor=discount
                )
            except CheckoutError as direct_error:
                if direct_error.code not in _COUPON_UNAVAILABLE:
                    raise
                logger.error(
                    f"已收款订单无法核销优惠券: order_id={order.id}, code={order.coupon_code}, reason={direct_error.code}"
                )

    def _on_failed(self, order: Order, event_type: str, now: datetime):
        if order.status not in (OrderStatus.DRAFT, OrderStatus.PENDING_PAYMENT):
            logger.info(f"订单已不在待支付状态，忽略 {event_type}: order_id={order.id}, status={order.status.value}")
            return
        if order.coupon_code:
            self.discounts.release(order.coupon_code, order.id)
        self.inventory.release(order.id, reason=event_type, now=now)
        self.orders.update(order, stock_status=StockStatus.RELEASED, payment_status=PaymentStatus.FAILED)
        self.orders.transition(order, OrderStatus.CANCELLED, actor="payment_gateway", note=event_type, now=now)

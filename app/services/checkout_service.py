"""结账编排

报价 → 优惠券预占 → 库存预占 → 建单 → 支付会话 / 立即确认。
支持事务时所有步骤在同一个事务里提交；不支持时逐步提交，失败后反向补偿。
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from redis import Redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import CheckoutError, bad_request, conflict
from app.db.transaction import CheckoutUnit, TransactionCapabilityProbe, savepoint
from app.models.orders import Order, OrderStatus, PaymentMethod, PaymentStatus, StockStatus
from app.schemas.pricing import Quote, QuoteRequest
from app.services.discount_ledger import DiscountLedger
from app.services.inventory_ledger import InventoryLedger
from app.services.order_aggregate import OrderAggregate
from app.services.payment_gateway import PaymentGateway, PaymentSession
from app.services.pricing_engine import PricingEngine

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    order: Order
    session: Optional[PaymentSession] = None
    already: bool = False
    transactional: bool = True


class CheckoutService:

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        redis: Optional[Redis] = None,
        probe: Optional[TransactionCapabilityProbe] = None,
        pricing: Optional[PricingEngine] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.probe = probe
        self.pricing = pricing or PricingEngine(db)
        self.inventory = InventoryLedger(db, redis=redis)
        self.discounts = DiscountLedger(db)
        self.orders = OrderAggregate(db)

    def quote(self, request: QuoteRequest, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Quote:
        """只读报价"""
        return self.pricing.quote(request.items, request.shipping, request.coupon_code, user_id=user_id, now=now)

    def checkout_deferred(
        self,
        request: QuoteRequest,
        user_id: str,
        idempotency_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """在线支付：预占优惠券和库存，创建支付会话，等待支付回调确认"""
        key = self._require_key(idempotency_key)
        existing = self.orders.find_by_idempotency(user_id, PaymentMethod.ONLINE, key)
        if existing is not None:
            logger.info(f"幂等命中，返回已有订单: order_id={existing.id}")
            return CheckoutResult(existing, session=self._session_of(existing), already=True)

        now = now or utcnow()
        quote = self.quote(request, user_id=user_id, now=now)
        self._ensure_gifts_available(quote)

        transactional = self._transactional()
        unit = CheckoutUnit(self.db, transactional)
        order_id = uuid.uuid4().hex
        coupon_code = quote.discounts.coupon.code if quote.discounts.coupon.amount_minor > 0 else None

        try:
            if coupon_code:
                # 先占优惠券，避免库存被一个注定失败的结账占住
                unit.step(
                    "reserve_coupon",
                    lambda: self.discounts.reserve(coupon_code, order_id, user_id=user_id, now=now),
                    lambda: self.discounts.release(coupon_code, order_id),
                )
            unit.step(
                "reserve_inventory",
                lambda: self.inventory.reserve(order_id, quote.reservation_items(), now=now),
                lambda: self.inventory.release(order_id, reason="checkout_failed"),
            )
            order = unit.step(
                "create_order",
                lambda: self._create_order(quote, user_id, PaymentMethod.ONLINE, key, coupon_code, order_id, now),
                lambda: self._delete_order(order_id),
            )
            session = self._create_session(order_id, quote)
            unit.step("persist_session", lambda: self._persist_session(order, session))
            unit.commit()
        except IntegrityError:
            unit.rollback()
            return self._idempotency_race(user_id, PaymentMethod.ONLINE, key)
        except Exception:
            unit.rollback()
            raise

        logger.info(f"在线支付结账成功: order_id={order_id}, transactional={transactional}")
        return CheckoutResult(order, session=session, transactional=transactional)

    def checkout_cod(
        self,
        request: QuoteRequest,
        user_id: str,
        idempotency_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> CheckoutResult:
        """货到付款：确认库存、直接核销优惠券，订单同步进入 confirmed"""
        key = self._require_key(idempotency_key)
        existing = self.orders.find_by_idempotency(user_id, PaymentMethod.COD, key)
        if existing is not None:
            logger.info(f"幂等命中，返回已有订单: order_id={existing.id}")
            return CheckoutResult(existing, already=True)

        now = now or utcnow()
        quote = self.quote(request, user_id=user_id, now=now)
        self._ensure_gifts_available(quote)

        transactional = self._transactional()
        unit = CheckoutUnit(self.db, transactional)
        order_id = uuid.uuid4().hex
        coupon_code = quote.discounts.coupon.code if quote.discounts.coupon.amount_minor > 0 else None

        try:
            unit.step(
                "reserve_inventory",
                lambda: self.inventory.reserve(order_id, quote.reservation_items(), now=now),
                lambda: self.inventory.release(order_id, reason="checkout_failed", include_confirmed=True),
            )
            order = unit.step(
                "create_order",
                lambda: self._create_order(quote, user_id, PaymentMethod.COD, key, coupon_code, order_id, now),
                lambda: self._delete_order(order_id),
            )
            unit.step("confirm_inventory", lambda: self._confirm_inventory(order, now))
            unit.step(
                "confirm_order",
                lambda: self.orders.transition(order, OrderStatus.CONFIRMED, actor="checkout", now=now),
            )
            if coupon_code:
                # 核销没有补偿动作，必须是最后一步
                unit.step(
                    "consume_coupon",
                    lambda: self.discounts.consume_direct(
                        coupon_code,
                        order_id,
                        user_id=user_id,
                        now=now,
                        discount_minor=quote.discounts.coupon.amount_minor,
                    ),
                )
            unit.commit()
        except IntegrityError:
            unit.rollback()
            return self._idempotency_race(user_id, PaymentMethod.COD, key)
        except Exception:
            unit.rollback()
            raise

        logger.info(f"货到付款结账成功: order_id={order_id}, transactional={transactional}")
        return CheckoutResult(order, transactional=transactional)

    # ------------------------------------------------------------------
    # 步骤实现
    # ------------------------------------------------------------------

    def _create_order(
        self,
        quote: Quote,
        user_id: str,
        payment_method: PaymentMethod,
        key: str,
        coupon_code: Optional[str],
        order_id: str,
        now: datetime,
    ) -> Order:
        # 幂等键冲突只回滚保存点，外层由调用方统一回滚
        with savepoint(self.db):
            order = self.orders.create(
                quote,
                user_id=user_id,
                payment_method=payment_method,
                idempotency_key=key,
                coupon_code=coupon_code,
                order_id=order_id,
                now=now,
            )
        if payment_method == PaymentMethod.ONLINE:
            self.orders.update(order, stock_status=StockStatus.RESERVED, payment_status=PaymentStatus.PENDING)
            self.orders.transition(order, OrderStatus.PENDING_PAYMENT, actor="checkout", now=now)
        else:
            self.orders.update(order, stock_status=StockStatus.RESERVED)
            self.orders.transition(order, OrderStatus.PENDING_COD, actor="checkout", now=now)
        return order

    def _confirm_inventory(self, order: Order, now: datetime):
        self.inventory.confirm(order.id, now=now)
        self.orders.update(order, stock_status=StockStatus.CONFIRMED)

    def _delete_order(self, order_id: str):
        self.db.query(Order).filter(Order.id == order_id).delete(synchronize_session=False)
        logger.info(f"补偿删除订单: order_id={order_id}")

    def _create_session(self, order_id: str, quote: Quote) -> PaymentSession:
        try:
            return self.gateway.create_session(order_id, quote)
        except Exception as e:
            logger.error(f"创建支付会话失败: order_id={order_id}, error={e}")
            raise CheckoutError(
                "PAYMENT_SESSION_FAILED",
                "创建支付会话失败，请稍后重试",
                status_code=502,
                details={"order_id": order_id},
            ) from e

    def _persist_session(self, order: Order, session: PaymentSession):
        return self.orders.update(order, payment_session_id=session.handle, payment_session_url=session.url)

    # ------------------------------------------------------------------
    # 辅助
    # ------------------------------------------------------------------

    def _transactional(self) -> bool:
        if self.probe is None:
            return True
        return self.probe.ensure()

    @staticmethod
    def _require_key(idempotency_key: Optional[str]) -> str:
        key = (idempotency_key or "").strip()
        if not key:
            raise bad_request("IDEMPOTENCY_KEY_REQUIRED", "缺少 Idempotency-Key 请求头")
        if len(key) > 128:
            raise bad_request("IDEMPOTENCY_KEY_REQUIRED", "Idempotency-Key 过长")
        return key

    @staticmethod
    def _ensure_gifts_available(quote: Quote):
        blocking = quote.blocking_gift_warnings()
        if blocking:
            raise conflict(
                "GIFT_OUT_OF_STOCK",
                "赠品库存不足",
                {"gifts": [w.model_dump() for w in blocking]},
            )

    @staticmethod
    def _session_of(order: Order) -> Optional[PaymentSession]:
        if not order.payment_session_id:
            return None
        return PaymentSession(handle=order.payment_session_id, url=order.payment_session_url)

    def _idempotency_race(self, user_id: str, payment_method: PaymentMethod, key: str) -> CheckoutResult:
        """并发的同幂等键请求已经建单：返回那一单"""
        existing = self.orders.find_by_idempotency(user_id, payment_method, key)
        if existing is None:
            raise conflict("IDEMPOTENCY_CONFLICT", "结账请求冲突，请重试")
        logger.info(f"幂等键并发冲突，返回已有订单: order_id={existing.id}")
        return CheckoutResult(existing, session=self._session_of(existing), already=True)

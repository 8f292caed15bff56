"""支付回调事件单元测试"""
import pytest
from datetime import timedelta
from sqlalchemy import select

from app.core.exceptions import CheckoutError
from app.jobs import sweeps
from app.models import (
    Coupon,
    CouponRedemption,
    CouponReservation,
    CouponReservationStatus,
    CouponUserUsage,
    IdempotencyKey,
    IdempotencyStatus,
    InventoryReservation,
    OrderStatus,
    PaymentStatus,
    Product,
    ReservationStatus,
    StockStatus,
)
from app.services.checkout_service import CheckoutService
from app.services.order_workflow import OrderWorkflow
from app.services.payment_events import FAILED, SUCCEEDED, PaymentEventService
from app.services.pricing_engine import PricingEngine


def stock_of(db, product):
    return db.execute(select(Product.stock).where(Product.id == product.id)).scalar_one()


def coupon_counts(db, code="SAVE10"):
    return tuple(db.execute(
        select(Coupon.used_count, Coupon.reserved_count).where(Coupon.code == code)
    ).one())


def reservation_of(db, order_id):
    return db.execute(
        select(InventoryReservation)
        .where(InventoryReservation.order_id == order_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


@pytest.fixture
def product(catalog):
    return catalog.product(price_minor=15000, stock=3)


@pytest.fixture
def pending(db_session, catalog, make_cart, gateway, transactional_probe, product, now):
    """已创建支付会话、等待回调的在线订单"""
    area = catalog.delivery_area(fee_minor=0)
    catalog.coupon(code="SAVE10", value=10, min_order_total_minor=20000)
    pricing = PricingEngine(db_session, vat_rate=0.18, prices_include_vat=True, currency="ils", production=False)
    service = CheckoutService(db_session, gateway, probe=transactional_probe, pricing=pricing)
    result = service.checkout_deferred(make_cart((product, 2), area=area, coupon_code="SAVE10"), "u-1", "key-1", now=now)
    return result.order


@pytest.fixture
def events(db_session, gateway):
    return PaymentEventService(db_session, gateway)


class TestPaymentSucceeded:
    """支付成功事件测试类"""

    def test_confirms_order(self, db_session, events, gateway, pending, product, now):
        gateway.mark(pending.payment_session_id, "paid")

        result = events.process("evt-1", SUCCEEDED, session_handle=pending.payment_session_id, now=now)

        assert result.already is False
        assert result.status == "confirmed"
        assert result.stock_status == "confirmed"
        assert result.payment_status == "captured"
        assert pending.payment_captured_at is not None
        assert reservation_of(db_session, pending.id).status == ReservationStatus.CONFIRMED
        assert stock_of(db_session, product) == 1
        assert coupon_counts(db_session) == (1, 0)
        history = [h["status"] for h in pending.status_history]
        assert history[-2:] == ["payment_received", "confirmed"]

    def test_redelivery_is_replayed(self, db_session, events, gateway, pending, product, now):
        """测试重复投递返回上次结果，不重复核销"""
        gateway.mark(pending.payment_session_id, "paid")
        first = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)

        second = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)
        other = events.process("evt-2", SUCCEEDED, order_id=pending.id, now=now)

        assert second.already is True
        assert second.to_snapshot() == first.to_snapshot()
        assert other.already is False
        assert other.status == "confirmed"
        assert coupon_counts(db_session) == (1, 0)
        assert len(db_session.execute(select(CouponRedemption)).scalars().all()) == 1
        assert stock_of(db_session, product) == 1

    def test_unpaid_session_rejected_then_retried(self, db_session, events, gateway, pending, now):
        """测试网关未确认收款时失败，之后同一事件可以重试"""
        with pytest.raises(CheckoutError) as exc_info:
            events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)
        assert exc_info.value.code == "PAYMENT_NOT_CAPTURED"
        record = db_session.execute(
            select(IdempotencyKey).execution_options(populate_existing=True)
        ).scalar_one()
        assert record.status == IdempotencyStatus.FAILED

        gateway.mark(pending.payment_session_id, "paid")
        result = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)

        assert result.status == "confirmed"

    def test_event_record_keeps_attempt_history(self, db_session, events, gateway, pending, now):
        """测试去重记录保存事件类型、订单、尝试次数和失败原因"""
        with pytest.raises(CheckoutError):
            events.process("evt-1", SUCCEEDED, session_handle=pending.payment_session_id, now=now)

        def record():
            return db_session.execute(
                select(IdempotencyKey).execution_options(populate_existing=True)
            ).scalar_one()

        failed = record()
        assert failed.event_type == SUCCEEDED
        assert failed.order_id is None
        assert failed.attempts == 1
        assert failed.last_error == "PAYMENT_NOT_CAPTURED"

        gateway.mark(pending.payment_session_id, "paid")
        events.process("evt-1", SUCCEEDED, session_handle=pending.payment_session_id, now=now)

        done = record()
        assert done.status == IdempotencyStatus.SUCCESS
        assert done.order_id == pending.id
        assert done.attempts == 2
        assert done.last_error is None

    def test_in_progress_event_rejected(self, db_session, events, pending, now):
        db_session.add(IdempotencyKey(
            key="payment_event:evt-1",
            status=IdempotencyStatus.PROCESSING,
            expires_at=now + timedelta(days=1),
        ))
        db_session.commit()

        with pytest.raises(CheckoutError) as exc_info:
            events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)
        assert exc_info.value.code == "PAYMENT_EVENT_IN_PROGRESS"
        assert exc_info.value.status_code == 409

    def test_late_payment_re_reserves(self, db_session, events, gateway, pending, product, now):
        """测试预占过期被回收后到账：重新预占并确认"""
        swept = sweeps.run_sweep(db_session, None, now=now + timedelta(minutes=30))
        assert swept["expired_reservations"] == 1
        assert swept["expired_coupon_reservations"] == 1
        assert stock_of(db_session, product) == 3
        assert coupon_counts(db_session) == (0, 0)

        gateway.mark(pending.payment_session_id, "paid")
        result = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now + timedelta(minutes=31))

        assert result.status == "confirmed"
        assert result.stock_status == "confirmed"
        assert stock_of(db_session, product) == 1
        assert coupon_counts(db_session) == (1, 0)

    def test_late_payment_without_stock(self, db_session, events, gateway, pending, product, now):
        """测试库存已被别人买走：收款记录保留，库存标记失败"""
        later = now + timedelta(minutes=30)
        sweeps.run_sweep(db_session, None, now=later)
        db_session.execute(
            Product.__table__.update().where(Product.id == product.id).values(stock=0)
        )
        db_session.commit()

        gateway.mark(pending.payment_session_id, "paid")
        result = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=later)

        assert result.status == "payment_received"
        assert result.stock_status == "failed"
        assert result.payment_status == "captured"

    def test_payment_after_cancel_only_recorded(self, db_session, events, gateway, pending, product, now):
        OrderWorkflow(db_session).change_status(pending.id, OrderStatus.CANCELLED, actor="admin", now=now)
        assert stock_of(db_session, product) == 3

        gateway.mark(pending.payment_session_id, "paid")
        result = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)

        assert result.status == "cancelled"
        assert result.payment_status == "captured"
        assert stock_of(db_session, product) == 3

    def test_invalid_event(self, events, pending):
        with pytest.raises(CheckoutError) as exc_info:
            events.process("evt-1", "payment.unknown", order_id=pending.id)
        assert exc_info.value.code == "INVALID_PAYMENT_EVENT"
        with pytest.raises(CheckoutError):
            events.process("evt-1", SUCCEEDED)

    def test_unknown_session(self, events, now):
        with pytest.raises(CheckoutError) as exc_info:
            events.process("evt-1", SUCCEEDED, session_handle="fake_cs_missing", now=now)
        assert exc_info.value.code == "ORDER_NOT_FOUND"


class TestPaymentFailed:
    """支付失败事件测试类"""

    def test_failed_releases_everything(self, db_session, events, pending, product, now):
        result = events.process("evt-1", FAILED, order_id=pending.id, now=now)

        assert result.status == "cancelled"
        assert result.stock_status == "released"
        assert result.payment_status == "failed"
        assert pending.cancel_reason == FAILED
        assert stock_of(db_session, product) == 3
        assert coupon_counts(db_session) == (0, 0)
        assert reservation_of(db_session, pending.id).status == ReservationStatus.RELEASED

    def test_failed_after_success_ignored(self, db_session, events, gateway, pending, product, now):
        gateway.mark(pending.payment_session_id, "paid")
        events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)

        result = events.process("evt-2", FAILED, order_id=pending.id, now=now)

        assert result.status == "confirmed"
        assert pending.stock_status == StockStatus.CONFIRMED
        assert pending.payment_status == PaymentStatus.CAPTURED
        assert stock_of(db_session, product) == 1


class TestCouponPerUserLimit:
    """优惠券单用户限额与支付回调测试类"""

    def test_second_pending_order_gets_no_coupon(self, db_session, catalog, make_cart, gateway, events, product, now):
        """测试同一用户两笔待支付订单只有第一笔带优惠，两笔都能正常收款"""
        area = catalog.delivery_area(fee_minor=0)
        catalog.coupon(code="ONCE", value=10, usage_per_user=1)
        pricing = PricingEngine(db_session, vat_rate=0.18, prices_include_vat=True, currency="ils", production=False)
        service = CheckoutService(db_session, gateway, pricing=pricing)
        request = make_cart((product, 1), area=area, coupon_code="ONCE")

        first = service.checkout_deferred(request, "u-1", "key-a", now=now).order
        second = service.checkout_deferred(request, "u-1", "key-b", now=now).order

        assert first.coupon_code == "ONCE"
        assert second.coupon_code is None
        assert second.pricing["grand_total_minor"] == 15000

        for index, order in enumerate((first, second)):
            gateway.mark(order.payment_session_id, "paid")
            result = events.process(f"evt-{index}", SUCCEEDED, order_id=order.id, now=now)
            assert result.status == "confirmed"
        assert coupon_counts(db_session, "ONCE") == (1, 0)

    def test_coupon_rejected_after_payment_keeps_capture(self, db_session, events, gateway, pending, now):
        """测试已收款订单核销被拒时仍记录收款并确认订单"""
        coupon_id = db_session.execute(select(Coupon.id).where(Coupon.code == "SAVE10")).scalar_one()
        db_session.execute(Coupon.__table__.update().where(Coupon.id == coupon_id).values(usage_per_user=1))
        db_session.add(CouponUserUsage(coupon_id=coupon_id, user_id="u-1", used_count=1))
        db_session.commit()
        gateway.mark(pending.payment_session_id, "paid")

        result = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)

        assert result.status == "confirmed"
        assert result.payment_status == "captured"
        assert pending.payment_captured_at is not None
        assert coupon_counts(db_session) == (0, 0)
        assert db_session.execute(select(CouponRedemption)).scalars().all() == []
        reservation = db_session.execute(
            select(CouponReservation)
            .where(CouponReservation.order_id == pending.id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        assert reservation.status == CouponReservationStatus.RELEASED

        replay = events.process("evt-1", SUCCEEDED, order_id=pending.id, now=now)
        assert replay.already is True

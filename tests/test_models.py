"""模型单元测试"""
import pytest
from datetime import timedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.models import (
    ChangeType,
    Coupon,
    CouponRedemption,
    CouponUserUsage,
    IdempotencyKey,
    IdempotencyStatus,
    InventoryLog,
    InventoryReservation,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductVariant,
    ReservationStatus,
    StockStatus,
)


class TestModels:
    """数据模型测试类"""

    def test_product_defaults(self, db_session):
        """测试商品模型默认值"""
        product = Product(sku="PROD001", name="测试商品", price_minor=1990)
        db_session.add(product)
        db_session.commit()

        saved = db_session.execute(select(Product)).scalar_one()
        assert saved.id is not None
        assert saved.stock == 0
        assert saved.track_inventory is True
        assert saved.allow_backorder is False
        assert saved.is_active is True
        assert saved.created_at is not None

    def test_product_variants(self, db_session):
        product = Product(sku="PROD001", name="测试商品", price_minor=1000)
        product.variants.append(ProductVariant(sku="PROD001-L", name="L", stock=3))
        db_session.add(product)
        db_session.commit()

        variant = db_session.execute(select(ProductVariant)).scalar_one()
        assert variant.product_id == product.id
        assert variant.product.sku == "PROD001"

    def test_duplicate_sku_rejected(self, db_session):
        db_session.add(Product(sku="PROD001", name="A"))
        db_session.commit()

        db_session.add(Product(sku="PROD001", name="B"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_coupon_counters_non_negative(self, db_session):
        """测试优惠券计数不能为负"""
        db_session.add(Coupon(code="SAVE10", value=10, reserved_count=-1))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_reservation_one_per_order(self, db_session, now):
        """测试同一订单只能有一条预占记录"""
        expires = now + timedelta(minutes=15)
        db_session.add(InventoryReservation(order_id="order-1", items=[], expires_at=expires))
        db_session.commit()
        saved = db_session.execute(select(InventoryReservation)).scalar_one()
        assert saved.status == ReservationStatus.RESERVED

        db_session.add(InventoryReservation(order_id="order-1", items=[], expires_at=expires))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_inventory_log(self, db_session):
        product = Product(sku="PROD001", name="测试商品", stock=10)
        db_session.add(product)
        db_session.flush()

        db_session.add(InventoryLog(
            product_id=product.id,
            order_id="order-1",
            change_type=ChangeType.RESERVE,
            quantity=-2,
            before_available=10,
            after_available=8,
            source="checkout",
        ))
        db_session.commit()

        log = db_session.execute(select(InventoryLog)).scalar_one()
        assert log.change_type == ChangeType.RESERVE
        assert log.after_available == 8

    def test_order_defaults_and_idempotency(self, db_session):
        """测试订单默认状态与幂等唯一约束"""
        db_session.add(Order(id="order-1", user_id="u-1", payment_method=PaymentMethod.ONLINE, idempotency_key="k"))
        db_session.commit()

        order = db_session.get(Order, "order-1")
        assert order.status == OrderStatus.DRAFT
        assert order.stock_status == StockStatus.NONE
        assert order.payment_status == PaymentStatus.UNPAID
        assert order.refunded_minor == 0

        # 不同支付路径可以使用相同幂等键
        db_session.add(Order(id="order-2", user_id="u-1", payment_method=PaymentMethod.COD, idempotency_key="k"))
        db_session.commit()

        db_session.add(Order(id="order-3", user_id="u-1", payment_method=PaymentMethod.ONLINE, idempotency_key="k"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_redemption_once_per_order(self, db_session):
        coupon = Coupon(code="SAVE10", value=10)
        db_session.add(coupon)
        db_session.flush()

        db_session.add(CouponRedemption(coupon_id=coupon.id, code="SAVE10", order_id="order-1"))
        db_session.commit()
        db_session.add(CouponRedemption(coupon_id=coupon.id, code="SAVE10", order_id="order-1"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_user_usage_unique(self, db_session):
        coupon = Coupon(code="SAVE10", value=10)
        db_session.add(coupon)
        db_session.flush()

        db_session.add(CouponUserUsage(coupon_id=coupon.id, user_id="u-1", used_count=1))
        db_session.commit()
        db_session.add(CouponUserUsage(coupon_id=coupon.id, user_id="u-1", used_count=1))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_idempotency_key_default_status(self, db_session):
        db_session.add(IdempotencyKey(key="payment_event:evt-1"))
        db_session.commit()

        record = db_session.get(IdempotencyKey, "payment_event:evt-1")
        assert record.status == IdempotencyStatus.PROCESSING
        assert record.attempts == 1
        assert record.response_snapshot is None

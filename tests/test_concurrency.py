"""并发结账测试（文件 sqlite，多线程 + 屏障同时起跑）"""
import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import CheckoutError
from app.db.transaction import TransactionCapabilityProbe
from app.models import Coupon, DeliveryArea, Product
from app.schemas.pricing import CartLineRequest, QuoteRequest, ShippingMode, ShippingSelection
from app.services.checkout_service import CheckoutService
from app.services.discount_ledger import DiscountLedger
from app.services.inventory_ledger import InventoryLedger
from app.services.payment_gateway import FakePaymentGateway
from app.services.pricing_engine import PricingEngine

WORKERS = 6


@pytest.fixture
def factory(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def seeded(factory):
    """库存只剩 1 件的商品 + 只能用一次的优惠券"""
    db = factory()
    try:
        product = Product(sku="LAST-1", name="最后一件", price_minor=15000, stock=1)
        area = DeliveryArea(name="中部地区", fee_minor=0)
        coupon = Coupon(code="ONCE", value=10, usage_limit=1)
        db.add_all([product, area, coupon])
        db.commit()
        return {"product_id": product.id, "area_id": area.id}
    finally:
        db.close()


def race(factory, worker):
    """所有线程在屏障处同时起跑；返回 (成功结果, 错误码) 列表"""
    barrier = threading.Barrier(WORKERS)

    def run(index):
        db = factory()
        try:
            barrier.wait()
            try:
                result = worker(db, index)
                db.commit()
                return result, None
            except CheckoutError as e:
                db.rollback()
                return None, e.code
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        return list(pool.map(run, range(WORKERS)))


def stock_of(factory, product_id):
    db = factory()
    try:
        return db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
    finally:
        db.close()


class TestLastUnitRace:
    """最后一件库存的并发测试类"""

    def test_only_one_reservation_wins(self, factory, seeded, now):
        items = [{"product_id": seeded["product_id"], "quantity": 1}]

        outcomes = race(factory, lambda db, i: InventoryLedger(db).reserve(f"order-{i}", items, now=now))

        winners = [result for result, _ in outcomes if result is not None]
        errors = [code for _, code in outcomes if code is not None]
        assert len(winners) == 1
        assert errors == ["OUT_OF_STOCK"] * (WORKERS - 1)
        assert stock_of(factory, seeded["product_id"]) == 0

    def test_only_one_coupon_use(self, factory, seeded, now):
        """测试剩余一次额度的优惠券只被一个订单预占"""
        outcomes = race(factory, lambda db, i: DiscountLedger(db).reserve("ONCE", f"order-{i}", f"u-{i}", now=now))

        assert len([r for r, _ in outcomes if r is not None]) == 1
        assert [c for _, c in outcomes if c is not None] == ["COUPON_LIMIT_REACHED"] * (WORKERS - 1)
        db = factory()
        try:
            counts = db.execute(select(Coupon.used_count, Coupon.reserved_count)).one()
        finally:
            db.close()
        assert tuple(counts) == (0, 1)

    def test_concurrent_cod_checkouts(self, factory, file_engine, seeded, now):
        """测试多个用户同时下单最后一件：只有一个订单成功，库存不为负"""
        probe = TransactionCapabilityProbe(file_engine, mode="auto", required=False)
        assert probe.supported is True
        gateway = FakePaymentGateway()
        request = QuoteRequest(
            items=[CartLineRequest(product_id=seeded["product_id"], quantity=1)],
            shipping=ShippingSelection(mode=ShippingMode.DELIVERY, delivery_area_id=seeded["area_id"]),
        )

        def checkout(db, i):
            pricing = PricingEngine(db, vat_rate=0.18, prices_include_vat=True, currency="ils", production=False)
            service = CheckoutService(db, gateway, probe=probe, pricing=pricing)
            return service.checkout_cod(request, f"u-{i}", "key-1", now=now)

        outcomes = race(factory, checkout)

        winners = [result for result, _ in outcomes if result is not None]
        assert len(winners) == 1
        assert set(code for _, code in outcomes if code is not None) <= {"OUT_OF_STOCK"}
        assert stock_of(factory, seeded["product_id"]) == 0

    def test_same_order_reserved_once(self, factory, seeded, now):
        """测试同一订单的并发预占只扣减一次"""
        db = factory()
        try:
            db.execute(Product.__table__.update().values(stock=WORKERS))
            db.commit()
        finally:
            db.close()
        items = [{"product_id": seeded["product_id"], "quantity": 1}]

        outcomes = race(factory, lambda db, i: InventoryLedger(db).reserve("order-1", items, now=now))

        assert all(code is None for _, code in outcomes)
        assert sum(1 for result, _ in outcomes if not result.already) == 1
        assert stock_of(factory, seeded["product_id"]) == WORKERS - 1

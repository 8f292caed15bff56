"""测试配置和 fixtures"""
import os

# 必须在导入 app 之前设置：测试使用 sqlite，不连接 PostgreSQL
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from redis import Redis
from redlock import Redlock

import app.models  # noqa: F401  注册所有模型
from app.db.base import Base
from app.db.session import build_engine, enable_sqlite_transactions
from app.db.transaction import TransactionCapabilityProbe
from app.models import (
    Campaign,
    CampaignTarget,
    Coupon,
    DeliveryArea,
    DiscountType,
    GiftRule,
    Offer,
    OfferType,
    PickupPoint,
    Product,
    ProductVariant,
    StorePickupConfig,
)
from app.schemas.pricing import CartLineRequest, QuoteRequest, ShippingMode, ShippingSelection
from app.services.payment_gateway import FakePaymentGateway

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """内存 sqlite（StaticPool，所有会话共享同一连接）"""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def transactional_probe(engine):
    """在任何会话使用连接之前完成探测"""
    probe = TransactionCapabilityProbe(engine, mode="auto", required=False)
    assert probe.supported is True
    return probe


@pytest.fixture
def compensating_probe(engine):
    probe = TransactionCapabilityProbe(engine, mode="disabled", required=False)
    assert probe.supported is False
    return probe


@pytest.fixture
def db_session(engine, transactional_probe):
    """创建数据库会话"""
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def file_engine(tmp_path):
    """文件 sqlite，用于多线程并发测试（BEGIN IMMEDIATE 串行化写事务）"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_transactions(engine, "BEGIN IMMEDIATE")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    redis_mock.mget.return_value = [None, None]
    redis_mock.pipeline.return_value = Mock()
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock


@pytest.fixture
def gateway():
    return FakePaymentGateway()


class CatalogSeeder:
    """测试数据构造（每个方法都会提交）"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def _sku(self, prefix):
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def product(self, price_minor=10000, stock=10, **kwargs):
        kwargs.setdefault("sku", self._sku("SKU"))
        kwargs.setdefault("name", f"商品 {kwargs['sku']}")
        return self._save(Product(price_minor=price_minor, stock=stock, **kwargs))

    def variant(self, product, stock=5, price_minor=None, **kwargs):
        kwargs.setdefault("sku", self._sku(f"{product.sku}-V"))
        kwargs.setdefault("name", kwargs["sku"])
        return self._save(ProductVariant(product_id=product.id, stock=stock, price_minor=price_minor, **kwargs))

    def delivery_area(self, fee_minor=0, **kwargs):
        kwargs.setdefault("name", "中部地区")
        return self._save(DeliveryArea(fee_minor=fee_minor, **kwargs))

    def pickup_point(self, fee_minor=0, **kwargs):
        kwargs.setdefault("name", "自提点")
        kwargs.setdefault("address", "Herzl 1")
        return self._save(PickupPoint(fee_minor=fee_minor, **kwargs))

    def store_pickup(self, enabled=True, fee_minor=0):
        return self._save(StorePickupConfig(is_enabled=enabled, fee_minor=fee_minor, address="门店"))

    def coupon(self, code="SAVE10", discount_type=DiscountType.PERCENT, value=10, **kwargs):
        return self._save(Coupon(code=code, discount_type=discount_type, value=value, **kwargs))

    def campaign(self, value=10, discount_type=DiscountType.PERCENT, applies_to=CampaignTarget.ALL, **kwargs):
        kwargs.setdefault("name", "全场活动")
        return self._save(Campaign(discount_type=discount_type, value=value, applies_to=applies_to, **kwargs))

    def offer(self, offer_type=OfferType.PERCENT_OFF, value=0, **kwargs):
        kwargs.setdefault("name", "促销")
        return self._save(Offer(offer_type=offer_type, value=value, **kwargs))

    def gift_rule(self, gift_product, **kwargs):
        kwargs.setdefault("name", "满赠")
        return self._save(GiftRule(gift_product_id=gift_product.id, **kwargs))


@pytest.fixture
def catalog(db_session):
    return CatalogSeeder(db_session)


def cart(*lines, area=None, coupon_code=None, shipping=None):
    """构造报价请求：lines 为 (product, quantity) 或 (product, variant, quantity)"""
    items = []
    for line in lines:
        if len(line) == 2:
            product, quantity = line
            items.append(CartLineRequest(product_id=product.id, quantity=quantity))
        else:
            product, variant, quantity = line
            items.append(CartLineRequest(product_id=product.id, variant_id=variant.id, quantity=quantity))
    if shipping is None:
        shipping = ShippingSelection(mode=ShippingMode.DELIVERY, delivery_area_id=area.id if area else None)
    return QuoteRequest(items=items, shipping=shipping, coupon_code=coupon_code)


@pytest.fixture
def make_cart():
    return cart


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def later():
    return lambda minutes: NOW + timedelta(minutes=minutes)

import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
)
from app.db.base import Base, BigIntPK, JSONType


class OfferType(str, enum.Enum):
    PERCENT_OFF = "PERCENT_OFF"
    FIXED_OFF = "FIXED_OFF"
    FREE_SHIPPING = "FREE_SHIPPING"
    BUY_X_GET_Y = "BUY_X_GET_Y"


class Offer(Base):
    __tablename__ = "offers"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(String(160), nullable=False)

    offer_type = Column(
        Enum(OfferType, name="offer_type", create_type=True),
        nullable=False,
    )

    # PERCENT_OFF: 百分比；FIXED_OFF: 金额（最小单位）
    value = Column(Integer, nullable=False, default=0)

    min_total_minor = Column(Integer, nullable=False, default=0, comment="券后小计门槛")
    max_discount_minor = Column(Integer, nullable=True)

    # 定向：都为空时作用于整单
    product_ids = Column(JSONType, nullable=False, default=list)
    category_ids = Column(JSONType, nullable=False, default=list)

    # BUY_X_GET_Y
    buy_product_id = Column(BigInteger, nullable=True)
    buy_variant_id = Column(BigInteger, nullable=True)
    buy_quantity = Column(Integer, nullable=False, default=1)
    get_product_id = Column(BigInteger, nullable=True)
    get_variant_id = Column(BigInteger, nullable=True)
    get_quantity = Column(Integer, nullable=False, default=1)

    # 不可叠加的优惠命中后停止评估后续优惠
    stackable = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)

    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
)
from app.db.base import Base, BigIntPK


class GiftRule(Base):
    """赠品规则：满足全部条件时赠送一件赠品"""

    __tablename__ = "gift_rules"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(String(160), nullable=False)

    gift_product_id = Column(BigInteger, nullable=False)

    min_order_total_minor = Column(Integer, nullable=True)
    required_product_id = Column(BigInteger, nullable=True)
    required_category_id = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

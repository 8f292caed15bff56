from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    func,
    ForeignKey,
    UniqueConstraint,
)
from app.db.base import Base, BigIntPK


class CouponRedemption(Base):
    """核销记录：只增不删，(coupon_id, order_id) 唯一，是“该订单是否已用券”的唯一依据"""

    __tablename__ = "coupon_redemptions"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    coupon_id = Column(
        BigInteger,
        ForeignKey("coupons.id", ondelete="RESTRICT"),
        nullable=False,
    )

    code = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=True)

    discount_minor = Column(
        Integer,
        nullable=False,
        default=0,
        comment="本单优惠金额",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "coupon_id",
            "order_id",
            name="uq_coupon_redemption_order",
        ),
    )


class CouponUserUsage(Base):
    """用户维度的核销计数"""

    __tablename__ = "coupon_user_usage"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    coupon_id = Column(
        BigInteger,
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
    )

    user_id = Column(String(64), nullable=False)

    used_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "coupon_id",
            "user_id",
            name="uq_coupon_user_usage",
        ),
    )

import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    TIMESTAMP,
    func,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from app.db.base import Base, BigIntPK


class CouponReservationStatus(str, enum.Enum):
    ACTIVE = "active"       # 预占中
    CONSUMED = "consumed"   # 已核销
    RELEASED = "released"   # 已释放
    EXPIRED = "expired"     # 超时回收


class CouponReservation(Base):
    __tablename__ = "coupon_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    coupon_id = Column(
        BigInteger,
        ForeignKey("coupons.id", ondelete="CASCADE"),
        nullable=False,
        comment="优惠券ID",
    )

    code = Column(String(64), nullable=False)

    order_id = Column(
        String(64),
        nullable=False,
        comment="订单ID",
    )

    user_id = Column(String(64), nullable=True)

    status = Column(
        Enum(
            CouponReservationStatus,
            name="coupon_reservation_status_type",
            create_type=True,
        ),
        nullable=False,
        default=CouponReservationStatus.ACTIVE,
    )

    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # 同一优惠券同一订单只有一条预占
    __table_args__ = (
        UniqueConstraint(
            "coupon_id",
            "order_id",
            name="uq_coupon_reservation_order",
        ),
    )


Index(
    "idx_coupon_reservation_status_expires",
    CouponReservation.status,
    CouponReservation.expires_at,
)

import enum

from sqlalchemy import (
    Column,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
    CheckConstraint,
)
from app.db.base import Base, BigIntPK


class DiscountType(str, enum.Enum):
    PERCENT = "percent"   # value 为百分比
    FIXED = "fixed"       # value 为固定金额（最小单位）


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    # 统一存大写
    code = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="优惠码",
    )

    discount_type = Column(
        Enum(DiscountType, name="coupon_discount_type", create_type=True),
        nullable=False,
        default=DiscountType.PERCENT,
    )

    value = Column(
        Integer,
        nullable=False,
        default=0,
        comment="百分比或固定金额（最小单位）",
    )

    min_order_total_minor = Column(
        Integer,
        nullable=False,
        default=0,
        comment="最低订单金额（活动折扣后）",
    )

    max_discount_minor = Column(
        Integer,
        nullable=True,
        comment="单笔最高优惠金额",
    )

    usage_limit = Column(
        Integer,
        nullable=True,
        comment="全局可用次数（空为不限）",
    )

    usage_per_user = Column(
        Integer,
        nullable=True,
        comment="每个用户可用次数（空为不限）",
    )

    # 计数器只允许优惠券账本写入
    used_count = Column(Integer, nullable=False, default=0, comment="已核销次数")
    reserved_count = Column(Integer, nullable=False, default=0, comment="预占中次数")

    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupon_used_non_negative"),
        CheckConstraint("reserved_count >= 0", name="ck_coupon_reserved_non_negative"),
    )

import enum

from sqlalchemy import (
    Column,
    String,
    TIMESTAMP,
    func,
    Enum,
    Index,
)
from app.db.base import Base, BigIntPK, JSONType



# 1️ 预占状态枚举（数据库 ENUM）

class ReservationStatus(str, enum.Enum):
    RESERVED = "reserved"     # 已预占（库存已扣减）
    CONFIRMED = "confirmed"   # 已确认（下单成功，扣减永久生效）
    RELEASED = "released"     # 已释放
    EXPIRED = "expired"       # 超时被清理任务回收



# 2️ 预占表（每个订单一行）

class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    # 同一订单只能有一条预占记录
    order_id = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="订单ID",
    )

    # [{"product_id", "variant_id", "quantity", "tracked"}]
    # tracked=False 表示该项未扣减库存（不跟踪库存的商品）
    items = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="预占明细",
    )

    status = Column(
        Enum(
            ReservationStatus,
            name="reservation_status_type",
            create_type=True,
        ),
        nullable=False,
        default=ReservationStatus.RESERVED,
        comment="预占状态",
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="预占过期时间",
    )

    reserved_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="最近一次预占时间（孤儿修复的宽限期起点）",
    )

    confirmed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    released_at = Column(TIMESTAMP(timezone=True), nullable=True)
    restocked_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="退货回补库存时间",
    )

    release_reason = Column(
        String(64),
        nullable=True,
        comment="释放原因：checkout_failed / expired / orphaned / stale_confirmed",
    )

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



# 3️ 高频查询优化索引（清理任务按状态 + 过期时间扫描）

Index(
    "idx_reservation_status_expires",
    InventoryReservation.status,
    InventoryReservation.expires_at,
)

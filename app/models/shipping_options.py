from sqlalchemy import (
    Column,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
)
from app.db.base import Base, BigIntPK


class DeliveryArea(Base):
    __tablename__ = "delivery_areas"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(String(160), nullable=False)
    fee_minor = Column(Integer, nullable=False, default=0, comment="配送费")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class PickupPoint(Base):
    __tablename__ = "pickup_points"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(String(160), nullable=False)
    address = Column(String(255), nullable=False, default="")
    fee_minor = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class StorePickupConfig(Base):
    """门店自提配置（单行）"""

    __tablename__ = "store_pickup_config"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    is_enabled = Column(Boolean, nullable=False, default=False)
    fee_minor = Column(Integer, nullable=False, default=0)
    address = Column(String(255), nullable=False, default="")

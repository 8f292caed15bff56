import enum

from sqlalchemy import (
    Column,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
)
from app.db.base import Base, BigIntPK, JSONType
from app.models.coupons import DiscountType


class CampaignTarget(str, enum.Enum):
    ALL = "all"
    PRODUCTS = "products"
    CATEGORIES = "categories"


class Campaign(Base):
    """全店活动折扣：同一时间最多生效一个"""

    __tablename__ = "campaigns"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(String(160), nullable=False)

    discount_type = Column(
        Enum(DiscountType, name="campaign_discount_type", create_type=True),
        nullable=False,
        default=DiscountType.PERCENT,
    )

    value = Column(Integer, nullable=False, default=0, comment="百分比或固定金额（最小单位）")

    applies_to = Column(
        Enum(CampaignTarget, name="campaign_target_type", create_type=True),
        nullable=False,
        default=CampaignTarget.ALL,
    )

    product_ids = Column(JSONType, nullable=False, default=list)
    category_ids = Column(JSONType, nullable=False, default=list)

    # 越小越优先
    priority = Column(Integer, nullable=False, default=100)

    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

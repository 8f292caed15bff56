from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    ForeignKey,
    CheckConstraint,
    func,
    Index,
)
from sqlalchemy.orm import relationship
from app.db.base import Base, BigIntPK


class Product(Base):
    __tablename__ = "products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    sku = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="商品唯一SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    category_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="分类ID（目录服务提供，只读）",
    )

    price_minor = Column(
        Integer,
        nullable=False,
        default=0,
        comment="售价（最小货币单位）",
    )

    sale_price_minor = Column(
        Integer,
        nullable=True,
        comment="促销价（低于售价且在时间窗口内才生效）",
    )

    sale_starts_at = Column(TIMESTAMP(timezone=True), nullable=True)
    sale_ends_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # 库存字段只允许库存预占账本写入
    stock = Column(
        Integer,
        nullable=False,
        default=0,
        comment="可用库存（允许超卖时可为负）",
    )

    track_inventory = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="是否跟踪库存，关闭后预占为空操作",
    )

    allow_backorder = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="是否允许负库存（预售/缺货下单）",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        onupdate=func.now(),
    )

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.id",
    )


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="商品ID",
    )

    sku = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="规格SKU",
    )

    name = Column(
        String(255),
        nullable=False,
        default="",
        comment="规格名称（如 颜色/尺码）",
    )

    # 仅在显式设置且为正数时覆盖商品售价
    price_minor = Column(
        Integer,
        nullable=True,
        comment="规格价格覆盖",
    )

    stock = Column(
        Integer,
        nullable=False,
        default=0,
        comment="规格可用库存",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    product = relationship("Product", back_populates="variants")

    __table_args__ = (
        CheckConstraint("price_minor IS NULL OR price_minor >= 0", name="ck_variant_price_non_negative"),
    )


# -----------------------------
# 组合索引（如果未来支持按名称搜索）
# -----------------------------
Index(
    "idx_products_name",
    Product.name,
)

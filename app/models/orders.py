import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
    UniqueConstraint,
    Index,
)
from app.db.base import Base, JSONType


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"       # 等待在线支付
    PENDING_COD = "pending_cod"               # 货到付款待确认
    PAYMENT_RECEIVED = "payment_received"     # 已收款
    STOCK_CONFIRMED = "stock_confirmed"       # 库存已确认
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    COD = "cod"           # 货到付款（立即确认路径）
    ONLINE = "online"     # 外部支付会话（延迟确认路径）


class StockStatus(str, enum.Enum):
    NONE = "none"
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    FAILED = "failed"     # 支付到账但库存已无法补占，需人工处理


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class Order(Base):
    __tablename__ = "orders"

    # uuid 字符串，在预占库存之前生成
    id = Column(
        String(64),
        primary_key=True,
    )

    user_id = Column(
        String(64),
        nullable=False,
        index=True,
        comment="下单用户（身份服务提供）",
    )

    payment_method = Column(
        Enum(PaymentMethod, name="order_payment_method", create_type=True),
        nullable=False,
    )

    idempotency_key = Column(
        String(128),
        nullable=False,
        comment="结账幂等键",
    )

    status = Column(
        Enum(OrderStatus, name="order_status_type", create_type=True),
        nullable=False,
        default=OrderStatus.DRAFT,
    )

    stock_status = Column(
        Enum(StockStatus, name="order_stock_status_type", create_type=True),
        nullable=False,
        default=StockStatus.NONE,
    )

    payment_status = Column(
        Enum(PaymentStatus, name="order_payment_status_type", create_type=True),
        nullable=False,
        default=PaymentStatus.UNPAID,
    )

    currency = Column(String(8), nullable=False, default="ils")

    # 以下为财务快照，订单进入已付款/已确认状态后不可修改
    items = Column(JSONType, nullable=False, default=list, comment="商品行快照")
    gifts = Column(JSONType, nullable=False, default=list, comment="赠品快照")
    pricing = Column(JSONType, nullable=False, default=dict, comment="价格快照（最小单位）")
    shipping = Column(JSONType, nullable=False, default=dict, comment="配送方式快照")

    coupon_code = Column(String(64), nullable=True)

    payment_session_id = Column(String(128), nullable=True, index=True)
    payment_session_url = Column(String(512), nullable=True)
    payment_captured_at = Column(TIMESTAMP(timezone=True), nullable=True)

    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    cancelled_by = Column(String(64), nullable=True)

    tracking_number = Column(String(128), nullable=True)
    carrier = Column(String(64), nullable=True)

    refunded_minor = Column(Integer, nullable=False, default=0)

    status_history = Column(JSONType, nullable=False, default=list)

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

    # 同一用户、同一支付路径、同一幂等键只会创建一个订单
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "payment_method",
            "idempotency_key",
            name="uq_order_idempotency",
        ),
    )


Index(
    "idx_orders_status_created",
    Order.status,
    Order.created_at,
)

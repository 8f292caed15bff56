"""支付回调去重记录

每条网关事件占一行，键为 payment_event:{event_id}。
除处理状态外还记下事件类型、对应订单、尝试次数和最近一次失败原因，
便于排查同一事件被反复投递的情况。
"""

import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    func,
    Enum,
    Index,
)
from app.db.base import Base, JSONType


class IdempotencyStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"          # 失败后允许重新投递


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String(128), primary_key=True, comment="幂等唯一键")

    status = Column(
        Enum(
            IdempotencyStatus,
            name="idempotency_status_type",
            create_type=True,
        ),
        nullable=False,
        default=IdempotencyStatus.PROCESSING,
        comment="当前处理状态",
    )

    event_type = Column(String(64), nullable=True, comment="网关事件类型，如 payment.succeeded")
    # 按支付会话投递的事件在找到订单后才回填
    order_id = Column(String(64), nullable=True, comment="事件对应的订单")

    attempts = Column(Integer, nullable=False, default=1, comment="处理次数（含首次）")
    last_error = Column(Text, nullable=True, comment="最近一次失败的错误码")

    # 重复投递时直接返回
    response_snapshot = Column(JSONType, nullable=True, comment="处理结果快照")

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True, comment="过期时间（用于清理）")


Index("idx_idempotency_keys_expires_at", IdempotencyKey.expires_at)
Index("idx_idempotency_keys_order_id", IdempotencyKey.order_id)

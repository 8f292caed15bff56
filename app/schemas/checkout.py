"""结账 / 订单 / 支付回调 API 的 Pydantic 模型"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from app.core.money import from_minor
from app.models.orders import OrderStatus
from app.schemas.pricing import Quote


# ==================== 请求模型 ====================

class PaymentEventRequest(BaseModel):
    """支付网关回调事件"""
    event_id: str = Field(..., min_length=1, max_length=100, description="网关事件ID（去重依据）")
    type: str = Field(..., description="payment.succeeded / payment.failed / payment.expired")
    session_id: Optional[str] = Field(None, max_length=128, description="支付会话ID")
    order_id: Optional[str] = Field(None, max_length=64, description="订单ID")


class OrderStatusRequest(BaseModel):
    """订单状态变更（履约 / 退款协作方调用）"""
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=255)
    refund_amount_minor: Optional[int] = Field(None, gt=0, description="退款金额（部分退款 / 全额退款时必填）")
    restock: bool = Field(False, description="退款时是否回补库存")


class TrackingRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=128)
    carrier: Optional[str] = Field(None, max_length=64)


# ==================== 响应模型 ====================

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    payment_method: str
    status: str
    stock_status: str
    payment_status: str
    currency: str
    items: List[Dict[str, Any]]
    gifts: List[Dict[str, Any]]
    pricing: Dict[str, Any]
    shipping: Dict[str, Any]
    coupon_code: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_session_url: Optional[str] = None
    payment_captured_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    refunded_minor: int = 0
    status_history: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @computed_field
    @property
    def grand_total_minor(self) -> int:
        return int(self.pricing.get("grand_total_minor") or 0)

    @computed_field
    @property
    def grand_total_major(self) -> float:
        return from_minor(self.grand_total_minor)

    @classmethod
    def from_order(cls, order) -> "OrderOut":
        return cls(
            id=order.id,
            user_id=order.user_id,
            payment_method=order.payment_method.value,
            status=order.status.value,
            stock_status=order.stock_status.value,
            payment_status=order.payment_status.value,
            currency=order.currency,
            items=order.items or [],
            gifts=order.gifts or [],
            pricing=order.pricing or {},
            shipping=order.shipping or {},
            coupon_code=order.coupon_code,
            payment_session_id=order.payment_session_id,
            payment_session_url=order.payment_session_url,
            payment_captured_at=order.payment_captured_at,
            cancelled_at=order.cancelled_at,
            cancel_reason=order.cancel_reason,
            tracking_number=order.tracking_number,
            carrier=order.carrier,
            refunded_minor=order.refunded_minor or 0,
            status_history=order.status_history or [],
            created_at=order.created_at,
        )


class PaymentSessionOut(BaseModel):
    handle: str
    url: Optional[str] = None


class CheckoutData(BaseModel):
    order: OrderOut
    payment_session: Optional[PaymentSessionOut] = None
    already: bool = False


class CheckoutResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: CheckoutData


class QuoteResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Quote


class OrderResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: OrderOut


class PaymentEventData(BaseModel):
    event_id: str
    order_id: str
    status: str
    stock_status: str
    payment_status: str
    already: bool = False


class PaymentEventResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: PaymentEventData

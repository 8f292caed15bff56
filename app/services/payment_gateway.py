"""支付网关协作方

核心只依赖两个调用：create_session(order_id, quote) 与 retrieve_session(handle)，
任何实现这两个方法的网关都可以接入。默认使用 FakePaymentGateway（开发 / 测试）。
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.core.config import settings
from app.schemas.pricing import Quote

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """网关调用失败（网络错误、被拒绝等）"""


@dataclass(frozen=True)
class PaymentSession:
    handle: str
    url: Optional[str] = None


@dataclass(frozen=True)
class SessionStatus:
    handle: str
    status: str                    # open / paid / expired / failed
    order_id: Optional[str] = None
    amount_minor: Optional[int] = None


class PaymentGateway(ABC):

    @abstractmethod
    def create_session(self, order_id: str, quote: Quote) -> PaymentSession:
        """按订单创建支付会话"""
        ...

    @abstractmethod
    def retrieve_session(self, handle: str) -> SessionStatus:
        """查询支付会话状态"""
        ...


class FakePaymentGateway(PaymentGateway):
    """可配置成功 / 失败的假网关"""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "gateway unavailable"
        self.calls: List[dict] = []
        self.sessions: Dict[str, SessionStatus] = {}

    def configure(self, should_succeed: bool, failure_reason: str = "gateway unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_session(self, order_id: str, quote: Quote) -> PaymentSession:
        self.calls.append({
            "method": "create_session",
            "order_id": order_id,
            "amount_minor": quote.grand_total_minor,
            "currency": quote.currency,
        })
        if not self.should_succeed:
            raise PaymentGatewayError(self.failure_reason)

        handle = f"fake_cs_{uuid.uuid4().hex[:16]}"
        self.sessions[handle] = SessionStatus(
            handle=handle, status="open", order_id=order_id, amount_minor=quote.grand_total_minor
        )
        return PaymentSession(handle=handle, url=f"https://pay.example.test/session/{handle}")

    def retrieve_session(self, handle: str) -> SessionStatus:
        self.calls.append({"method": "retrieve_session", "handle": handle})
        if handle not in self.sessions:
            raise PaymentGatewayError(f"unknown session {handle}")
        return self.sessions[handle]

    def mark(self, handle: str, status: str) -> None:
        """测试 / 本地联调用：模拟用户完成或放弃支付"""
        session = self.sessions[handle]
        self.sessions[handle] = SessionStatus(
            handle=handle, status=status, order_id=session.order_id, amount_minor=session.amount_minor
        )


_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _current_gateway
    if _current_gateway is None:
        if settings.PAYMENT_GATEWAY != "fake":
            logger.warning(f"未知的支付网关配置 {settings.PAYMENT_GATEWAY}，使用 fake 网关")
        _current_gateway = FakePaymentGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None

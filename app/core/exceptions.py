"""业务异常定义

所有对外可见的失败都携带稳定的机器可读 code 和可读 message，
服务层直接抛出，由 app.main 中的异常处理器统一渲染。
"""

from typing import Any, List, Optional

from fastapi import HTTPException


class CheckoutError(HTTPException):
    """结账引擎业务异常（HTTPException 子类）"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Any] = None,
    ):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"CheckoutError(code={self.code!r}, status_code={self.status_code})"


def bad_request(code: str, message: str, details: Any = None) -> CheckoutError:
    return CheckoutError(code, message, status_code=400, details=details)


def not_found(code: str, message: str, details: Any = None) -> CheckoutError:
    return CheckoutError(code, message, status_code=404, details=details)


def conflict(code: str, message: str, details: Any = None) -> CheckoutError:
    return CheckoutError(code, message, status_code=409, details=details)


def out_of_stock_error(shortages: List[dict]) -> CheckoutError:
    """所有缺货行可用量都为 0 时为 OUT_OF_STOCK，否则为 OUT_OF_STOCK_PARTIAL"""
    if all(s["available"] <= 0 for s in shortages):
        return conflict("OUT_OF_STOCK", "商品库存不足", {"items": shortages})
    return conflict("OUT_OF_STOCK_PARTIAL", "购买数量超过可用库存", {"items": shortages})

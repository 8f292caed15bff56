"""结账 API 路由"""

from fastapi import APIRouter, Depends, HTTPException, Header, Body
from typing import Optional
import logging

from app.core.dependencies import (
    get_current_user,
    get_checkout_service,
    get_payment_event_service,
)
from app.schemas.checkout import (
    CheckoutData,
    CheckoutResponse,
    OrderOut,
    PaymentEventData,
    PaymentEventRequest,
    PaymentEventResponse,
    PaymentSessionOut,
    QuoteResponse,
)
from app.schemas.pricing import QuoteRequest
from app.services.checkout_service import CheckoutResult, CheckoutService
from app.services.payment_events import PaymentEventService

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/checkout",
    tags=["结账"],
    responses={
        400: {"description": "请求参数错误"},
        401: {"description": "缺少用户身份"},
        409: {"description": "库存 / 优惠券 / 状态冲突"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)


def _checkout_payload(result: CheckoutResult) -> CheckoutResponse:
    session = None
    if result.session is not None:
        session = PaymentSessionOut(handle=result.session.handle, url=result.session.url)
    return CheckoutResponse(
        success=True,
        message="订单已存在" if result.already else "下单成功",
        data=CheckoutData(
            order=OrderOut.from_order(result.order),
            payment_session=session,
            already=result.already,
        ),
    )


@router.post(
    "/quote",
    response_model=QuoteResponse,
    summary="购物车报价",
    description="""计算购物车报价（商品行、配送费、活动 / 优惠码 / 促销、赠品、税费）。

    **特点：**
    - 只读，不预占库存和优惠券
    - 金额均为最小货币单位，附带主单位镜像
    - 优惠码不满足条件时优惠为 0，不报错
    """,
)
def quote(
    request: QuoteRequest = Body(..., description="购物车与配送方式"),
    x_user_id: Optional[str] = Header(None),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        result = service.quote(request, user_id=x_user_id)
        return QuoteResponse(success=True, message="报价成功", data=result)
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"报价失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/cod",
    response_model=CheckoutResponse,
    summary="货到付款下单",
    description="""立即确认路径：确认库存、直接核销优惠券，订单同步进入 confirmed。

    **幂等：** 必须携带 `Idempotency-Key` 请求头，同一用户同一幂等键只会创建一个订单。
    """,
)
def checkout_cod(
    request: QuoteRequest = Body(...),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        result = service.checkout_cod(request, user_id, idempotency_key)
        return _checkout_payload(result)
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"货到付款下单失败: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/deferred",
    response_model=CheckoutResponse,
    summary="在线支付下单",
    description="""延迟确认路径：预占优惠券和库存，创建支付会话；支付成功回调后再确认。

    **幂等：** 重复请求返回同一订单和同一支付会话。
    """,
)
def checkout_deferred(
    request: QuoteRequest = Body(...),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        result = service.checkout_deferred(request, user_id, idempotency_key)
        return _checkout_payload(result)
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"在线支付下单失败: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/payment-events",
    response_model=PaymentEventResponse,
    summary="支付回调事件",
    description="""支付网关回调：按事件ID去重，重复投递返回上次结果。

    - `payment.succeeded`：记录收款、确认库存、核销优惠券、确认订单
    - `payment.failed` / `payment.expired`：释放预占并取消订单
    """,
)
def payment_event(
    request: PaymentEventRequest = Body(...),
    service: PaymentEventService = Depends(get_payment_event_service),
):
    try:
        result = service.process(
            request.event_id,
            request.type,
            session_handle=request.session_id,
            order_id=request.order_id,
        )
        return PaymentEventResponse(
            success=True,
            message="事件已处理" if result.already else "处理成功",
            data=PaymentEventData(**result.to_snapshot(), already=result.already),
        )
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"支付事件处理失败: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

"""订单查询与状态变更 API 路由（履约 / 退款协作方使用）"""

from fastapi import APIRouter, Depends, HTTPException, Path, Body
from sqlalchemy.orm import Session
import logging

from app.core.dependencies import get_db, get_redis, get_current_user
from app.schemas.checkout import OrderOut, OrderResponse, OrderStatusRequest, TrackingRequest
from app.services.order_aggregate import OrderAggregate
from app.services.order_workflow import OrderWorkflow

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/orders",
    tags=["订单"],
    responses={
        404: {"description": "订单不存在"},
        409: {"description": "状态迁移不合法或快照已锁定"},
        500: {"description": "服务器内部错误"}
    }
)


@router.get("/{order_id}", response_model=OrderResponse, summary="查询订单")
def get_order(
    order_id: str = Path(..., max_length=64, description="订单ID"),
    db: Session = Depends(get_db),
):
    try:
        order = OrderAggregate(db).get(order_id)
        return OrderResponse(success=True, data=OrderOut.from_order(order))
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="变更订单状态",
    description="""按状态机变更订单状态。

    - 进入已收款状态要求已记录收款时间
    - 进入库存已确认 / 已确认状态要求库存已确认
    - 取消时自动记录取消时间、原因和操作人
    - 退款需提供退款金额，可选择回补库存
    """,
)
def change_order_status(
    order_id: str = Path(..., max_length=64, description="订单ID"),
    request: OrderStatusRequest = Body(...),
    actor: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
):
    try:
        order = OrderWorkflow(db, redis).change_status(
            order_id,
            request.status,
            actor=actor,
            note=request.note,
            refund_amount_minor=request.refund_amount_minor,
            restock=request.restock,
        )
        return OrderResponse(success=True, message="状态已更新", data=OrderOut.from_order(order))
    except HTTPException:
        # 透传 HTTPException
        db.rollback()
        raise
    except Exception as e:
        logger.error(f"变更订单状态失败: {str(e)}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/tracking", response_model=OrderResponse, summary="填写物流信息")
def set_tracking(
    order_id: str = Path(..., max_length=64, description="订单ID"),
    request: TrackingRequest = Body(...),
    actor: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        order = OrderWorkflow(db).set_tracking(order_id, request.tracking_number, request.carrier)
        logger.info(f"订单物流已更新: order_id={order_id}, actor={actor}")
        return OrderResponse(success=True, message="物流信息已更新", data=OrderOut.from_order(order))
    except HTTPException:
        # 透传 HTTPException
        db.rollback()
        raise
    except Exception as e:
        logger.error(f"填写物流失败: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))

"""库存查询与回收任务 API 路由（展示两种触发方式：直接调用 / Celery）"""

from fastapi import APIRouter, Depends, HTTPException, Path, Body
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.core.dependencies import get_db, get_redis, get_inventory_ledger
from app.jobs import sweeps
from app.schemas.inventory_api import (
    BatchStockQueryRequest,
    SweepRequest,
    StockResponse,
    BatchStockResponse,
    SweepResponse,
    SweepResult,
    CeleryTaskResponse,
    TaskStatusResponse,
)
from app.services.inventory_ledger import InventoryLedger
from tasks.checkout_tasks import run_sweep as celery_sweep_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        400: {"description": "请求参数错误"},
        404: {"description": "资源未找到"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)


@router.get(
    "/stock/{product_id}",
    response_model=StockResponse,
    summary="查询商品库存",
    description="""查询指定商品的可用库存数量。

    **缓存策略：**
    - 首先查询Redis缓存
    - 缓存未命中则查询数据库
    - 查询结果缓存5分钟，任何库存变动都会让缓存失效
    """,
    responses={
        200: {
            "description": "查询成功",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "product_id": 1,
                        "available_stock": 100
                    }
                }
            }
        }
    }
)
def get_stock(
    product_id: int = Path(
        ...,
        gt=0,
        description="商品ID",
        examples=[1]
    ),
    ledger: InventoryLedger = Depends(get_inventory_ledger),
):
    """查询商品可用库存（带缓存）"""
    try:
        stock = ledger.get_available_stock(product_id)
        return {
            "success": True,
            "product_id": product_id,
            "available_stock": stock
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询库存失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/stock/batch",
    response_model=BatchStockResponse,
    summary="批量查询商品库存",
    description="""批量查询多个商品的库存数量。

    **限制：**
    - 单次最多查询100个商品
    """,
)
def batch_get_stocks(
    request: BatchStockQueryRequest = Body(
        ...,
        description="批量查询请求参数"
    ),
    ledger: InventoryLedger = Depends(get_inventory_ledger),
):
    """批量查询商品库存（Redis mget + 数据库 in 查询）"""
    try:
        stocks = ledger.batch_get_available_stock(request.product_ids)
        return BatchStockResponse(
            success=True,
            data=stocks
        )
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"批量查询库存失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sweep/manual", response_model=SweepResponse)
def manual_sweep(
    request: Optional[SweepRequest] = Body(None),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
):
    """手动触发回收（方式一：API 直接调用）"""
    request = request or SweepRequest()
    try:
        result = sweeps.run_sweep(
            db,
            redis,
            batch_size=request.batch_size,
            include_coupons=request.include_coupons,
            repair=request.repair,
        )
        return SweepResponse(success=True, message="手动回收完成", data=SweepResult(**result))
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"手动回收失败: {str(e)}")
        db.rollback()
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sweep/celery", response_model=CeleryTaskResponse)
async def celery_sweep(request: Optional[SweepRequest] = Body(None)):
    """触发 Celery 异步回收任务（方式二：Celery 调用）"""
    request = request or SweepRequest()
    try:
        task = celery_sweep_task.delay(request.batch_size, request.include_coupons, request.repair)
        return {
            "success": True,
            "message": "已提交异步回收任务",
            "task_id": task.id
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sweep/status/{task_id}", response_model=TaskStatusResponse)
async def get_sweep_status(task_id: str):
    """查询 Celery 任务执行状态"""
    try:
        from celery_app import app
        task = app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "任务等待中"
        elif task.state == 'SUCCESS':
            status = f"任务完成: {task.result}"
        elif task.state == 'FAILURE':
            status = f"任务失败: {str(task.info)}"
        else:
            status = f"任务状态: {task.state}"

        return {
            "task_id": task_id,
            "status": status,
            "state": task.state
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))

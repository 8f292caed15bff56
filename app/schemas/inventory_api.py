"""库存查询与清理任务 API 的 Pydantic 模型"""

from pydantic import BaseModel, Field
from typing import List, Dict, Optional


# ==================== 请求模型 ====================

class BatchStockQueryRequest(BaseModel):
    """批量查询库存请求"""
    product_ids: List[int] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="商品ID列表",
        examples=[[1, 2, 3]]
    )


class SweepRequest(BaseModel):
    """清理 / 修复任务请求"""
    batch_size: int = Field(
        100,
        ge=1,
        le=10000,
        description="批处理大小",
        examples=[100]
    )
    include_coupons: bool = Field(
        True,
        description="同时回收过期的优惠券预占"
    )
    repair: bool = Field(
        False,
        description="同时修复孤儿预占和已失效的确认预占"
    )


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class StockResponse(BaseResponse):
    """单个商品库存响应"""
    product_id: int = Field(
        ...,
        description="商品ID"
    )
    available_stock: int = Field(
        ...,
        ge=0,
        description="可用库存数量"
    )


class BatchStockResponse(BaseResponse):
    """批量库存查询响应"""
    data: Dict[int, int] = Field(
        ...,
        description="商品ID到库存数量的映射"
    )


class SweepResult(BaseModel):
    expired_reservations: int = 0
    expired_coupon_reservations: int = 0
    orphaned_reservations: int = 0
    stale_confirmed: int = 0


class SweepResponse(BaseResponse):
    """清理任务响应"""
    data: SweepResult = Field(
        default_factory=SweepResult,
        description="各类记录的处理数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(
        "healthy",
        description="服务状态"
    )
    service: str = Field(
        "checkout-engine",
        description="服务名称"
    )
    version: str = Field(
        "1.0.0",
        description="服务版本"
    )
    transactional: Optional[bool] = Field(
        None,
        description="数据库是否支持多步骤事务"
    )

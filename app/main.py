from contextlib import asynccontextmanager
import logging
from typing import Any, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse
from sqlalchemy import text

from app.core.config import settings
from app.core.dependencies import transaction_probe
from app.core.exceptions import CheckoutError
from app.core.redis import async_redis
from app.db import engine, init_db
from app.routers import checkout_router, inventory_router, orders_router
from app.schemas.inventory_api import HealthCheckResponse

import uvicorn

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _check_database() -> bool:
    """连通性检查 + 事务能力探测，返回是否运行在事务模式"""
    # 探测要在任何会话占用连接之前完成（内存 sqlite 只有一个共享连接）
    transactional = transaction_probe.ensure()

    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))
    logger.info("✅ Database connection successful")

    if engine.dialect.name == "sqlite":
        # 本地运行没有迁移工具，直接按模型建表
        init_db()
        logger.info("✅ SQLite tables created")
    return transactional


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting checkout engine (environment=%s)...", settings.ENVIRONMENT)

    try:
        transactional = _check_database()
    except CheckoutError as e:
        # REQUIRE_TRANSACTIONS=true 而数据库不支持事务：拒绝启动
        logger.error("❌ %s", e.message)
        raise
    except Exception as e:
        logger.error("❌ Database connection failed: %s", e)
        raise

    if transactional:
        logger.info("✅ Checkout runs inside database transactions")
    else:
        logger.warning("⚠️  Transactions unavailable, checkout runs in compensating mode")

    # Redis 只用于库存查询缓存，不可用时降级为直接查库
    try:
        await async_redis.ping()
        logger.info("✅ Redis connected successfully")
    except Exception as e:
        logger.warning(f"⚠️  Redis connection failed: {e}, stock queries will bypass the cache")

    yield

    logger.info("Shutting down checkout engine...")
    await async_redis.aclose()
    engine.dispose()


app = FastAPI(
    title="结账交易引擎 API",
    description="报价、库存预占、优惠券预占与核销、订单状态机，支持事务与补偿两种执行模式",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境中应该指定具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout_router.router, prefix="/api/v1")
app.include_router(orders_router.router, prefix="/api/v1")
app.include_router(inventory_router.router, prefix="/api/v1")


def error_response(status_code: int, code: str, message: Any, details: Optional[Any] = None) -> JSONResponse:
    """统一错误响应：{"success": false, "code", "message", "details"?}"""
    content = {"success": False, "code": code, "message": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(CheckoutError)
async def checkout_exception_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error(f"Checkout error on {request.url.path}: {exc.code} - {exc.message}")
    else:
        logger.info(f"Checkout rejected on {request.url.path}: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return error_response(422, "VALIDATION_ERROR", "请求参数验证失败", exc.errors())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.error(f"HTTP error: {exc.status_code} - {exc.detail}")
    return error_response(exc.status_code, "HTTP_ERROR", exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response(500, "INTERNAL_ERROR", "服务器内部错误")


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """健康检查接口（附带当前执行模式）"""
    return HealthCheckResponse(transactional=transaction_probe.supported)


@app.get("/")
async def read_root():
    return {
        "message": "欢迎使用结账交易引擎",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT != "production"
    )

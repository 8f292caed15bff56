"""依赖注入配置模块"""

from typing import Optional

from fastapi import Depends, Header

# 数据库会话依赖
from app.db.session import SessionLocal, engine
from app.db.transaction import TransactionCapabilityProbe
from sqlalchemy.orm import Session

# Redis 依赖
from app.core.redis import redis_client, redlock, async_redis
from app.core.exceptions import CheckoutError

from app.services.checkout_service import CheckoutService
from app.services.inventory_ledger import InventoryLedger
from app.services.order_aggregate import OrderAggregate
from app.services.payment_events import PaymentEventService
from app.services.payment_gateway import PaymentGateway, get_gateway

# 进程内共享：启动时探测一次，结果缓存
transaction_probe = TransactionCapabilityProbe(engine)


def get_redis():
    """获取同步 Redis 客户端"""
    return redis_client

def get_async_redis():
    """获取异步 Redis 客户端"""
    return async_redis

def get_redlock():
    """获取 Redlock 分布式锁实例（仅后台任务使用）"""
    return redlock

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_transaction_probe() -> TransactionCapabilityProbe:
    return transaction_probe


def get_payment_gateway() -> PaymentGateway:
    return get_gateway()


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """身份服务在网关层完成认证，这里只读取透传的用户ID"""
    if not x_user_id or not x_user_id.strip():
        raise CheckoutError("UNAUTHENTICATED", "缺少用户身份", status_code=401)
    return x_user_id.strip()


def get_checkout_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    probe: TransactionCapabilityProbe = Depends(get_transaction_probe),
) -> CheckoutService:
    """获取结账服务实例（依赖注入）"""
    return CheckoutService(db=db, gateway=gateway, redis=redis, probe=probe)


def get_payment_event_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentEventService:
    return PaymentEventService(db=db, gateway=gateway, redis=redis)


def get_inventory_ledger(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> InventoryLedger:
    return InventoryLedger(db=db, redis=redis)


def get_order_aggregate(db: Session = Depends(get_db)) -> OrderAggregate:
    return OrderAggregate(db)


# 常用的依赖注入别名
DatabaseDep = Depends(get_db)
RedisDep = Depends(get_redis)
AsyncRedisDep = Depends(get_async_redis)
RedlockDep = Depends(get_redlock)
CurrentUserDep = Depends(get_current_user)
CheckoutServiceDep = Depends(get_checkout_service)
PaymentEventServiceDep = Depends(get_payment_event_service)
InventoryLedgerDep = Depends(get_inventory_ledger)

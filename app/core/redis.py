"""Redis 客户端配置模块

redis_client 用于库存查询缓存；redlock 只给后台清理 / 修复任务做单实例互斥，
结账请求路径不加锁。
"""

import logging
import os
from contextlib import contextmanager
from typing import Optional

from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redlock import Redlock

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# 基础 Redis 客户端
redis_client = Redis.from_url(REDIS_URL, decode_responses=True)
async_redis = AsyncRedis.from_url(REDIS_URL, decode_responses=True)


# Redlock 配置（支持单实例和多实例）
def create_redlock():
    """根据环境变量动态创建 Redlock 实例"""
    redis_hosts = os.getenv("REDIS_HOSTS", settings.REDIS_HOST)

    if "," in redis_hosts:  # 多实例模式
        servers = [
            {"host": host.strip(), "port": settings.REDIS_PORT, "db": settings.REDIS_DB}
            for host in redis_hosts.split(",")
        ]
    else:  # 单实例模式
        servers = [
            {"host": settings.REDIS_HOST, "port": settings.REDIS_PORT, "db": settings.REDIS_DB}
        ]

    return Redlock(servers)


redlock = create_redlock()


@contextmanager
def job_lock(rlock: Redlock, name: str, ttl_ms: Optional[int] = None):
    """后台任务互斥：拿不到锁时 yield False，调用方直接跳过本轮"""
    ttl = ttl_ms or settings.JOB_LOCK_TTL_MS
    lock = rlock.lock(f"lock:job:{name}", ttl)
    if not lock:
        logger.info(f"任务 {name} 正在其他 worker 上执行，跳过")
        yield False
        return
    try:
        yield True
    finally:
        rlock.unlock(lock)


# 导出
__all__ = [
    "redis_client",
    "async_redis",
    "redlock",
    "job_lock",
    "REDIS_URL",
]

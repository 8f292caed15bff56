"""Celery 配置文件"""

from celery import Celery

from app.core.config import settings

# 创建 Celery 应用实例
app = Celery('checkout_worker', include=['tasks.checkout_tasks'])

# 配置 Redis 作为 broker 和 backend
app.conf.broker_url = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/1"
app.conf.result_backend = f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/2"

# 任务序列化配置
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']

# 时区配置
app.conf.timezone = 'UTC'
app.conf.enable_utc = True

# 任务路由配置
app.conf.task_routes = {
    'tasks.checkout.*': {'queue': 'checkout'},
}

# 定时任务：过期回收每分钟一次，修复任务每 10 分钟一次
app.conf.beat_schedule = {
    'sweep-expired-reservations': {
        'task': 'tasks.checkout.sweep_expired_reservations',
        'schedule': 60.0,
    },
    'sweep-expired-coupon-reservations': {
        'task': 'tasks.checkout.sweep_expired_coupon_reservations',
        'schedule': 60.0,
    },
    'repair-orphaned-reservations': {
        'task': 'tasks.checkout.repair_orphaned_reservations',
        'schedule': 600.0,
    },
    'cleanup-stale-confirmed': {
        'task': 'tasks.checkout.cleanup_stale_confirmed',
        'schedule': 600.0,
    },
}

# Worker 配置
app.conf.worker_prefetch_multiplier = 1
app.conf.task_acks_late = True

# 导出应用实例
__all__ = ['app']

"""结账相关的 Celery 任务（过期回收 / 修复）

每个任务都先拿 redlock 锁，同一时间只有一个 worker 在处理同一类批次。
"""

from celery_app import app
from app.db.session import SessionLocal
from app.core.redis import redis_client, redlock, job_lock
from app.jobs import sweeps
import logging

logger = logging.getLogger(__name__)

SKIPPED = "skipped"


@app.task(name='tasks.checkout.sweep_expired_reservations')
def sweep_expired_reservations(batch_size: int = 100):
    """回收过期的库存预占

    Returns:
        处理的记录数量描述
    """
    with job_lock(redlock, "sweep_expired_reservations") as acquired:
        if not acquired:
            return SKIPPED
        db = SessionLocal()
        try:
            count = sweeps.sweep_inventory(db, redis_client, batch_size)
            result = f"成功回收 {count} 条过期库存预占"
            logger.info(result)
            return result
        except Exception as e:
            logger.error(f"回收过期库存预占失败: {str(e)}")
            db.rollback()
            raise
        finally:
            db.close()


@app.task(name='tasks.checkout.sweep_expired_coupon_reservations')
def sweep_expired_coupon_reservations(batch_size: int = 100):
    """回收过期的优惠券预占"""
    with job_lock(redlock, "sweep_expired_coupon_reservations") as acquired:
        if not acquired:
            return SKIPPED
        db = SessionLocal()
        try:
            count = sweeps.sweep_coupons(db, batch_size)
            result = f"成功回收 {count} 条过期优惠券预占"
            logger.info(result)
            return result
        except Exception as e:
            logger.error(f"回收过期优惠券预占失败: {str(e)}")
            db.rollback()
            raise
        finally:
            db.close()


@app.task(name='tasks.checkout.repair_orphaned_reservations')
def repair_orphaned_reservations(batch_size: int = 100):
    """释放没有对应订单的预占"""
    with job_lock(redlock, "repair_orphaned_reservations") as acquired:
        if not acquired:
            return SKIPPED
        db = SessionLocal()
        try:
            count = sweeps.repair_orphans(db, redis_client, batch_size)
            result = f"修复 {count} 条孤儿预占"
            logger.info(result)
            return result
        except Exception as e:
            logger.error(f"修复孤儿预占失败: {str(e)}")
            db.rollback()
            raise
        finally:
            db.close()


@app.task(name='tasks.checkout.cleanup_stale_confirmed')
def cleanup_stale_confirmed(batch_size: int = 100):
    """清理订单已取消 / 已退款 / 不存在的确认预占"""
    with job_lock(redlock, "cleanup_stale_confirmed") as acquired:
        if not acquired:
            return SKIPPED
        db = SessionLocal()
        try:
            count = sweeps.cleanup_confirmed(db, batch_size)
            result = f"清理 {count} 条失效的确认预占"
            logger.info(result)
            return result
        except Exception as e:
            logger.error(f"清理失效确认预占失败: {str(e)}")
            db.rollback()
            raise
        finally:
            db.close()


@app.task(name='tasks.checkout.run_sweep')
def run_sweep(batch_size: int = 100, include_coupons: bool = True, repair: bool = False):
    """API 手动触发的组合回收任务"""
    with job_lock(redlock, "run_sweep") as acquired:
        if not acquired:
            return SKIPPED
        db = SessionLocal()
        try:
            return sweeps.run_sweep(db, redis_client, batch_size, include_coupons, repair)
        except Exception as e:
            logger.error(f"组合回收任务失败: {str(e)}")
            db.rollback()
            raise
        finally:
            db.close()


# 导出任务
__all__ = [
    'sweep_expired_reservations',
    'sweep_expired_coupon_reservations',
    'repair_orphaned_reservations',
    'cleanup_stale_confirmed',
    'run_sweep',
]

"""过期回收与修复任务的公共实现（API / Celery / 命令行共用）"""

import logging
from datetime import datetime
from typing import Optional

from redis import Redis
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.config import settings
from app.models.coupon_reservations import CouponReservation, CouponReservationStatus
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.services.discount_ledger import DiscountLedger
from app.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


def sweep_inventory(db: Session, redis: Optional[Redis] = None, batch_size: Optional[int] = None,
                    now: Optional[datetime] = None) -> int:
    count = InventoryLedger(db, redis=redis, source="sweep_job").sweep_expired(now=now, limit=batch_size)
    db.commit()
    return count


def sweep_coupons(db: Session, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> int:
    count = DiscountLedger(db).sweep_expired(now=now, limit=batch_size)
    db.commit()
    return count


def repair_orphans(db: Session, redis: Optional[Redis] = None, batch_size: Optional[int] = None,
                   now: Optional[datetime] = None) -> int:
    count = InventoryLedger(db, redis=redis, source="repair_job").repair_orphaned(now=now, limit=batch_size)
    db.commit()
    return count


def cleanup_confirmed(db: Session, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> int:
    count = InventoryLedger(db, source="repair_job").cleanup_stale_confirmed(now=now, limit=batch_size)
    db.commit()
    return count


def run_sweep(
    db: Session,
    redis: Optional[Redis] = None,
    batch_size: Optional[int] = None,
    include_coupons: bool = True,
    repair: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """依次执行各项回收；每一项单独提交"""
    now = now or utcnow()
    batch_size = batch_size or settings.SWEEP_BATCH_SIZE
    result = {
        "expired_reservations": sweep_inventory(db, redis, batch_size, now),
        "expired_coupon_reservations": 0,
        "orphaned_reservations": 0,
        "stale_confirmed": 0,
    }
    if include_coupons:
        result["expired_coupon_reservations"] = sweep_coupons(db, batch_size, now)
    if repair:
        result["orphaned_reservations"] = repair_orphans(db, redis, batch_size, now)
        result["stale_confirmed"] = cleanup_confirmed(db, batch_size, now)
    logger.info(f"回收任务完成: {result}")
    return result


def count_pending(db: Session, now: Optional[datetime] = None) -> dict:
    """试运行：只统计待回收的记录数"""
    now = now or utcnow()
    expired = db.execute(
        select(func.count(InventoryReservation.id)).where(
            InventoryReservation.status == ReservationStatus.RESERVED,
            InventoryReservation.expires_at <= now,
        )
    ).scalar_one()
    expired_coupons = db.execute(
        select(func.count(CouponReservation.id)).where(
            CouponReservation.status == CouponReservationStatus.ACTIVE,
            CouponReservation.expires_at <= now,
        )
    ).scalar_one()
    return {"expired_reservations": expired, "expired_coupon_reservations": expired_coupons}

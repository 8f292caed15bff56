"""优惠券账本

Coupon.used_count / reserved_count 只在这里修改。
全局额度判断放在 UPDATE 的 WHERE 条件里：
    usage_limit IS NULL OR used_count + reserved_count < usage_limit
所以并发下不会超发；每个订单的核销记录 (coupon_id, order_id) 唯一，保证至多核销一次。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import settings
from app.core.exceptions import conflict, not_found
from app.db.transaction import savepoint
from app.models.coupon_redemptions import CouponRedemption, CouponUserUsage
from app.models.coupon_reservations import CouponReservation, CouponReservationStatus
from app.models.coupons import Coupon
from app.services.pricing_engine import coupon_blocked_reason, normalize_code

logger = logging.getLogger(__name__)


@dataclass
class CouponLedgerResult:
    coupon: Coupon
    reservation: Optional[CouponReservation] = None
    redemption: Optional[CouponRedemption] = None
    already: bool = False
    already_redeemed: bool = False


class DiscountLedger:
    """优惠券预占 / 释放 / 核销"""

    def __init__(self, db: Session, ttl_minutes: Optional[int] = None):
        self.db = db
        self.ttl_minutes = settings.COUPON_RESERVATION_TTL_MINUTES if ttl_minutes is None else ttl_minutes

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def _load_coupon(self, code: str) -> Coupon:
        coupon = self.db.execute(
            select(Coupon)
            .where(Coupon.code == normalize_code(code))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if coupon is None:
            raise not_found("COUPON_NOT_FOUND", "优惠券不存在", {"code": normalize_code(code)})
        return coupon

    def _validate(self, coupon: Coupon, now: datetime):
        reason = coupon_blocked_reason(coupon, now)
        if reason == "COUPON_INACTIVE":
            raise conflict(reason, "优惠券已停用", {"code": coupon.code})
        if reason == "COUPON_EXPIRED":
            raise conflict(reason, "优惠券不在有效期内", {"code": coupon.code})

    def _find_reservation(self, coupon_id: int, order_id: str) -> Optional[CouponReservation]:
        return self.db.execute(
            select(CouponReservation)
            .where(
                CouponReservation.coupon_id == coupon_id,
                CouponReservation.order_id == order_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _find_redemption(self, coupon_id: int, order_id: str) -> Optional[CouponRedemption]:
        return self.db.execute(
            select(CouponRedemption).where(
                CouponRedemption.coupon_id == coupon_id,
                CouponRedemption.order_id == order_id,
            )
        ).scalar_one_or_none()

    def _user_used_count(self, coupon_id: int, user_id: str) -> int:
        used = self.db.execute(
            select(CouponUserUsage.used_count).where(
                CouponUserUsage.coupon_id == coupon_id,
                CouponUserUsage.user_id == user_id,
            )
        ).scalar_one_or_none()
        return used or 0

    def _user_active_reservations(self, coupon_id: int, user_id: str, exclude_order_id: str) -> int:
        return self.db.execute(
            select(func.count(CouponReservation.id)).where(
                CouponReservation.coupon_id == coupon_id,
                CouponReservation.user_id == user_id,
                CouponReservation.order_id != exclude_order_id,
                CouponReservation.status == CouponReservationStatus.ACTIVE,
            )
        ).scalar_one()

    def _redeemed_or_user_limit(self, coupon: Coupon, order_id: str) -> CouponLedgerResult:
        """用户计数加不上去时，先确认是不是同一订单的并发核销已经成功"""
        redemption = self._find_redemption(coupon.id, order_id)
        if redemption is not None:
            logger.info(f"同订单并发核销，返回已有核销记录: code={coupon.code}, order_id={order_id}")
            return CouponLedgerResult(coupon, redemption=redemption, already=True, already_redeemed=True)
        raise conflict("COUPON_USER_LIMIT_REACHED", "该用户已达到优惠券使用上限", {"code": coupon.code})

    # ------------------------------------------------------------------
    # 预占 / 释放
    # ------------------------------------------------------------------

    def reserve(
        self,
        code: str,
        order_id: str,
        user_id: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CouponLedgerResult:
        """为订单预占一次优惠券额度（按订单幂等）"""
        now = now or utcnow()
        ttl = self.ttl_minutes if ttl_minutes is None else ttl_minutes
        expires_at = now + timedelta(minutes=ttl)

        coupon = self._load_coupon(code)
        self._validate(coupon, now)

        redemption = self._find_redemption(coupon.id, order_id)
        if redemption is not None:
            return CouponLedgerResult(coupon, redemption=redemption, already=True, already_redeemed=True)

        existing = self._find_reservation(coupon.id, order_id)
        if existing is not None and existing.status == CouponReservationStatus.ACTIVE:
            if as_utc(existing.expires_at) > now:
                return CouponLedgerResult(coupon, reservation=existing, already=True)
            self._release_reservation(coupon, existing, CouponReservationStatus.EXPIRED)

        if user_id and coupon.usage_per_user is not None:
            # 已核销次数 + 该用户其它订单上仍有效的预占
            held = self._user_used_count(coupon.id, user_id)
            held += self._user_active_reservations(coupon.id, user_id, order_id)
            if held >= coupon.usage_per_user:
                raise conflict("COUPON_USER_LIMIT_REACHED", "该用户已达到优惠券使用上限", {"code": coupon.code})

        result = self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                Coupon.is_active.is_(True),
                or_(
                    Coupon.usage_limit.is_(None),
                    Coupon.used_count + Coupon.reserved_count < Coupon.usage_limit,
                ),
            )
            .values(reserved_count=Coupon.reserved_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"优惠券额度已用完: code={coupon.code}, order_id={order_id}")
            raise conflict("COUPON_LIMIT_REACHED", "优惠券已被领完", {"code": coupon.code})

        if existing is not None:
            reused = self.db.execute(
                update(CouponReservation)
                .where(
                    CouponReservation.id == existing.id,
                    CouponReservation.status != CouponReservationStatus.ACTIVE,
                    CouponReservation.status != CouponReservationStatus.CONSUMED,
                )
                .values(
                    status=CouponReservationStatus.ACTIVE,
                    user_id=user_id or existing.user_id,
                    expires_at=expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            if reused.rowcount != 1:
                self._decrement_reserved(coupon.id)
                return CouponLedgerResult(coupon, reservation=self._find_reservation(coupon.id, order_id), already=True)
            reservation = self._find_reservation(coupon.id, order_id)
        else:
            reservation = CouponReservation(
                coupon_id=coupon.id,
                code=coupon.code,
                order_id=order_id,
                user_id=user_id,
                status=CouponReservationStatus.ACTIVE,
                expires_at=expires_at,
            )
            try:
                with savepoint(self.db):
                    self.db.add(reservation)
            except IntegrityError:
                logger.info(f"同订单并发预占优惠券: code={coupon.code}, order_id={order_id}")
                self._decrement_reserved(coupon.id)
                return CouponLedgerResult(coupon, reservation=self._find_reservation(coupon.id, order_id), already=True)

        logger.info(f"预占优惠券成功: code={coupon.code}, order_id={order_id}")
        return CouponLedgerResult(coupon, reservation=reservation)

    def release(self, code: str, order_id: str) -> bool:
        """释放预占（幂等，没有活跃预占时返回 False）"""
        coupon = self.db.execute(
            select(Coupon).where(Coupon.code == normalize_code(code))
        ).scalar_one_or_none()
        if coupon is None:
            return False
        reservation = self._find_reservation(coupon.id, order_id)
        if reservation is None:
            return False
        released = self._release_reservation(coupon, reservation, CouponReservationStatus.RELEASED)
        if released:
            logger.info(f"释放优惠券预占: code={coupon.code}, order_id={order_id}")
        return released

    def _release_reservation(
        self,
        coupon: Coupon,
        reservation: CouponReservation,
        to_status: CouponReservationStatus,
    ) -> bool:
        result = self.db.execute(
            update(CouponReservation)
            .where(
                CouponReservation.id == reservation.id,
                CouponReservation.status == CouponReservationStatus.ACTIVE,
            )
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._decrement_reserved(coupon.id)
        return True

    def _decrement_reserved(self, coupon_id: int):
        self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.reserved_count > 0)
            .values(reserved_count=Coupon.reserved_count - 1)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # 核销
    # ------------------------------------------------------------------

    def consume(
        self,
        code: str,
        order_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        discount_minor: int = 0,
    ) -> CouponLedgerResult:
        """把订单的预占转为核销（reserved -1, used +1）"""
        now = now or utcnow()
        coupon = self._load_coupon(code)

        redemption = self._find_redemption(coupon.id, order_id)
        if redemption is not None:
            return CouponLedgerResult(coupon, redemption=redemption, already=True, already_redeemed=True)

        reservation = self._find_reservation(coupon.id, order_id)
        if reservation is None or reservation.status != CouponReservationStatus.ACTIVE:
            raise not_found("RESERVATION_NOT_FOUND", "未找到有效的优惠券预占", {"code": coupon.code, "order_id": order_id})
        # 支付确认可能晚于预占过期，只要预占仍为 active 就允许核销
        user_id = user_id or reservation.user_id

        if user_id and not self._increment_user_usage(coupon, user_id):
            return self._redeemed_or_user_limit(coupon, order_id)

        redemption = CouponRedemption(
            coupon_id=coupon.id,
            code=coupon.code,
            order_id=order_id,
            user_id=user_id,
            discount_minor=discount_minor,
        )
        try:
            with savepoint(self.db):
                self.db.add(redemption)
        except IntegrityError:
            if user_id:
                self._decrement_user_usage(coupon.id, user_id)
            return CouponLedgerResult(
                coupon, redemption=self._find_redemption(coupon.id, order_id), already=True, already_redeemed=True
            )

        consumed = self.db.execute(
            update(CouponReservation)
            .where(
                CouponReservation.id == reservation.id,
                CouponReservation.status == CouponReservationStatus.ACTIVE,
            )
            .values(status=CouponReservationStatus.CONSUMED)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount == 1:
            self._decrement_reserved(coupon.id)
        self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id)
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"核销优惠券成功: code={coupon.code}, order_id={order_id}")
        return CouponLedgerResult(coupon, reservation=reservation, redemption=redemption)

    def consume_direct(
        self,
        code: str,
        order_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        discount_minor: int = 0,
    ) -> CouponLedgerResult:
        """不经过预占直接核销（货到付款路径，或支付确认时预占已丢失）"""
        now = now or utcnow()
        coupon = self._load_coupon(code)
        self._validate(coupon, now)

        redemption = self._find_redemption(coupon.id, order_id)
        if redemption is not None:
            return CouponLedgerResult(coupon, redemption=redemption, already=True, already_redeemed=True)

        if user_id and not self._increment_user_usage(coupon, user_id):
            return self._redeemed_or_user_limit(coupon, order_id)

        result = self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                or_(
                    Coupon.usage_limit.is_(None),
                    Coupon.used_count + Coupon.reserved_count < Coupon.usage_limit,
                ),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if user_id:
                self._decrement_user_usage(coupon.id, user_id)
            logger.info(f"优惠券额度已用完: code={coupon.code}, order_id={order_id}")
            raise conflict("COUPON_LIMIT_REACHED", "优惠券已被领完", {"code": coupon.code})

        redemption = CouponRedemption(
            coupon_id=coupon.id,
            code=coupon.code,
            order_id=order_id,
            user_id=user_id,
            discount_minor=discount_minor,
        )
        try:
            with savepoint(self.db):
                self.db.add(redemption)
        except IntegrityError:
            self.db.execute(
                update(Coupon)
                .where(Coupon.id == coupon.id, Coupon.used_count > 0)
                .values(used_count=Coupon.used_count - 1)
                .execution_options(synchronize_session=False)
            )
            if user_id:
                self._decrement_user_usage(coupon.id, user_id)
            return CouponLedgerResult(
                coupon, redemption=self._find_redemption(coupon.id, order_id), already=True, already_redeemed=True
            )

        logger.info(f"直接核销优惠券成功: code={coupon.code}, order_id={order_id}")
        return CouponLedgerResult(coupon, redemption=redemption)

    def _increment_user_usage(self, coupon: Coupon, user_id: str) -> bool:
        """用户计数 +1，超过 usage_per_user 时返回 False"""
        for _ in range(2):
            stmt = update(CouponUserUsage).where(
                CouponUserUsage.coupon_id == coupon.id,
                CouponUserUsage.user_id == user_id,
            )
            if coupon.usage_per_user is not None:
                stmt = stmt.where(CouponUserUsage.used_count < coupon.usage_per_user)
            result = self.db.execute(
                stmt.values(used_count=CouponUserUsage.used_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True

            exists_row = self.db.execute(
                select(CouponUserUsage.id).where(
                    CouponUserUsage.coupon_id == coupon.id,
                    CouponUserUsage.user_id == user_id,
                )
            ).scalar_one_or_none()
            if exists_row is not None:
                return False
            if coupon.usage_per_user is not None and coupon.usage_per_user < 1:
                return False

            try:
                with savepoint(self.db):
                    self.db.add(CouponUserUsage(coupon_id=coupon.id, user_id=user_id, used_count=1))
                return True
            except IntegrityError:
                # 并发插入，重新走条件更新
                continue
        return False

    def _decrement_user_usage(self, coupon_id: int, user_id: str):
        self.db.execute(
            update(CouponUserUsage)
            .where(
                CouponUserUsage.coupon_id == coupon_id,
                CouponUserUsage.user_id == user_id,
                CouponUserUsage.used_count > 0,
            )
            .values(used_count=CouponUserUsage.used_count - 1)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # 清理
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """把过期仍为 active 的优惠券预占标记为 expired 并归还额度"""
        now = now or utcnow()
        limit = limit or settings.SWEEP_BATCH_SIZE
        expired = self.db.execute(
            select(CouponReservation)
            .where(
                CouponReservation.status == CouponReservationStatus.ACTIVE,
                CouponReservation.expires_at <= now,
            )
            .order_by(CouponReservation.expires_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        count = 0
        for reservation in expired:
            result = self.db.execute(
                update(CouponReservation)
                .where(
                    CouponReservation.id == reservation.id,
                    CouponReservation.status == CouponReservationStatus.ACTIVE,
                )
                .values(status=CouponReservationStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._decrement_reserved(reservation.coupon_id)
                count += 1
        if count:
            logger.info(f"本次回收 {count} 条过期优惠券预占")
        return count

"""库存预占账本

库存字段只由本账本写入。每次扣减都是一条带前置条件的原子 UPDATE
（stock >= qty），不依赖分布式锁或行锁；同一次调用中途失败时，
先把已扣减的项目逐一回补，再把错误抛给调用方。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.config import settings
from app.core.exceptions import bad_request, conflict, not_found, out_of_stock_error
from app.db.transaction import savepoint
from app.models.inventory_logs import ChangeType, InventoryLog
from app.models.inventory_reservations import InventoryReservation, ReservationStatus
from app.models.orders import Order, OrderStatus
from app.models.product import Product, ProductVariant

logger = logging.getLogger(__name__)

STOCK_CACHE_KEY = "stock:available:{}"
STOCK_CACHE_TTL_SECONDS = 300


@dataclass
class LedgerResult:
    reservation: InventoryReservation
    already: bool = False  # 幂等空操作（已预占 / 已确认 / 已释放）


def _item_value(item, name):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def normalize_items(items: Iterable) -> List[dict]:
    """合并同一商品同一规格的预占项"""
    merged: Dict[tuple, dict] = {}
    for item in items or []:
        product_id = int(_item_value(item, "product_id"))
        variant_id = _item_value(item, "variant_id")
        variant_id = int(variant_id) if variant_id is not None else None
        quantity = int(_item_value(item, "quantity") or 0)
        if quantity <= 0:
            raise bad_request("INVALID_RESERVATION_ITEMS", "预占数量必须大于 0", {"product_id": product_id})
        key = (product_id, variant_id)
        if key in merged:
            merged[key]["quantity"] += quantity
        else:
            merged[key] = {"product_id": product_id, "variant_id": variant_id, "quantity": quantity}
    return list(merged.values())


def _items_signature(items: Iterable[dict]) -> list:
    return sorted(
        (int(i["product_id"]), i.get("variant_id") or 0, int(i["quantity"]))
        for i in items
    )


class InventoryLedger:
    """按订单预占 / 确认 / 释放库存，并提供过期回收与修复"""

    def __init__(
        self,
        db: Session,
        redis: Optional[Redis] = None,
        ttl_minutes: Optional[int] = None,
        source: str = "checkout",
    ):
        self.db = db
        self.redis = redis
        self.ttl_minutes = settings.STOCK_RESERVATION_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        self.source = source

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Optional[InventoryReservation]:
        return self.db.execute(
            select(InventoryReservation)
            .where(InventoryReservation.order_id == order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_available_stock(self, product_id: int) -> int:
        """查询商品可用库存（带缓存，有规格的商品为各规格之和）"""
        cache_key = STOCK_CACHE_KEY.format(product_id)

        if self.redis:
            try:
                cached = self.redis.get(cache_key)
                if cached is not None:
                    logger.debug(f"Cache hit for product {product_id}")
                    return int(cached)
            except RedisError as e:
                logger.warning(f"读取库存缓存失败: {e}")

        available = self._available_from_db([product_id]).get(product_id, 0)

        if self.redis:
            try:
                self.redis.setex(cache_key, STOCK_CACHE_TTL_SECONDS, available)
                logger.debug(f"Cache set for product {product_id}: {available}")
            except RedisError as e:
                logger.warning(f"写入库存缓存失败: {e}")

        return available

    def batch_get_available_stock(self, product_ids: List[int]) -> Dict[int, int]:
        """批量查询库存（先 mget 缓存，未命中部分查库后用 pipeline 回填）"""
        if not product_ids:
            return {}

        results: Dict[int, int] = {}
        uncached = list(product_ids)
        if self.redis:
            try:
                cached_values = self.redis.mget([STOCK_CACHE_KEY.format(pid) for pid in product_ids])
                uncached = []
                for pid, cached in zip(product_ids, cached_values):
                    if cached is not None:
                        results[pid] = int(cached)
                    else:
                        uncached.append(pid)
            except RedisError as e:
                logger.warning(f"批量读取库存缓存失败: {e}")
                uncached = list(product_ids)

        if uncached:
            stock_map = self._available_from_db(uncached)
            for pid in uncached:
                results[pid] = stock_map.get(pid, 0)
            if self.redis:
                try:
                    pipe = self.redis.pipeline()
                    for pid in uncached:
                        pipe.setex(STOCK_CACHE_KEY.format(pid), STOCK_CACHE_TTL_SECONDS, results[pid])
                    pipe.execute()
                except RedisError as e:
                    logger.warning(f"批量写入库存缓存失败: {e}")

        return results

    def _available_from_db(self, product_ids: List[int]) -> Dict[int, int]:
        rows = self.db.execute(
            select(Product.id, Product.stock).where(Product.id.in_(product_ids))
        ).all()
        stock_map = {pid: max(0, stock or 0) for pid, stock in rows}

        variant_rows = self.db.execute(
            select(ProductVariant.product_id, func.sum(ProductVariant.stock))
            .where(
                ProductVariant.product_id.in_(product_ids),
                ProductVariant.is_active.is_(True),
            )
            .group_by(ProductVariant.product_id)
        ).all()
        for pid, total in variant_rows:
            stock_map[pid] = max(0, int(total or 0))
        return stock_map

    # ------------------------------------------------------------------
    # 预占 / 确认 / 释放
    # ------------------------------------------------------------------

    def reserve(
        self,
        order_id: str,
        items: Iterable,
        ttl_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """预占库存（按订单幂等）

        已有未过期的预占：直接返回并延长有效期；已过期：先释放再重新预占。
        """
        now = now or utcnow()
        ttl = self.ttl_minutes if ttl_minutes is None else ttl_minutes
        expires_at = now + timedelta(minutes=ttl)
        normalized = normalize_items(items)
        if not normalized:
            raise bad_request("INVALID_RESERVATION_ITEMS", "预占明细为空")

        existing = self.get(order_id)
        if existing is not None:
            if existing.status == ReservationStatus.CONFIRMED:
                if _items_signature(existing.items) != _items_signature(normalized):
                    raise conflict(
                        "RESERVATION_ALREADY_CONFIRMED",
                        "该订单的库存已确认，不能改动明细",
                        {"order_id": order_id},
                    )
                return LedgerResult(existing, already=True)
            if existing.status == ReservationStatus.RESERVED:
                if as_utc(existing.expires_at) > now:
                    if _items_signature(existing.items) != _items_signature(normalized):
                        raise conflict(
                            "RESERVATION_ITEMS_MISMATCH",
                            "该订单已预占了不同的商品明细",
                            {"order_id": order_id},
                        )
                    if expires_at > as_utc(existing.expires_at):
                        existing.expires_at = expires_at
                        self.db.flush()
                    logger.info(f"预占已存在，延长有效期: order_id={order_id}")
                    return LedgerResult(existing, already=True)
                self._close(existing, [ReservationStatus.RESERVED], ReservationStatus.EXPIRED,
                            "expired", ChangeType.EXPIRE, now, restock=True)

        applied = self._apply_decrements(order_id, normalized)

        if existing is not None:
            # 复用同一订单的历史记录（已释放 / 已过期）
            result = self.db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.id == existing.id,
                    InventoryReservation.status.in_([ReservationStatus.RELEASED, ReservationStatus.EXPIRED]),
                )
                .values(
                    items=applied,
                    status=ReservationStatus.RESERVED,
                    expires_at=expires_at,
                    reserved_at=now,
                    confirmed_at=None,
                    released_at=None,
                    restocked_at=None,
                    release_reason=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._restore(applied)
                return LedgerResult(self.get(order_id), already=True)
            reservation = self.get(order_id)
        else:
            reservation = InventoryReservation(
                order_id=order_id,
                items=applied,
                status=ReservationStatus.RESERVED,
                expires_at=expires_at,
                reserved_at=now,
            )
            try:
                with savepoint(self.db):
                    self.db.add(reservation)
            except IntegrityError:
                # 并发的同订单预占已经写入，回补本次扣减
                logger.info(f"同订单并发预占，回补本次扣减: order_id={order_id}")
                self._restore(applied)
                return LedgerResult(self.get(order_id), already=True)

        for item in applied:
            if item["tracked"]:
                self._log(item, order_id, ChangeType.RESERVE, -item["quantity"])
        self._invalidate(applied)
        logger.info(f"预占库存成功: order_id={order_id}, items={len(applied)}")
        return LedgerResult(reservation)

    def confirm(self, order_id: str, now: Optional[datetime] = None) -> LedgerResult:
        """确认预占（不再改动库存），过期的预占不能确认"""
        now = now or utcnow()
        reservation = self.get(order_id)
        if reservation is None:
            raise not_found("RESERVATION_NOT_FOUND", "未找到有效的预占记录", {"order_id": order_id})
        if reservation.status == ReservationStatus.CONFIRMED:
            return LedgerResult(reservation, already=True)
        self._ensure_confirmable(reservation, now)

        result = self.db.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.id == reservation.id,
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.expires_at > now,
            )
            .values(status=ReservationStatus.CONFIRMED, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        reservation = self.get(order_id)
        if result.rowcount != 1:
            if reservation.status == ReservationStatus.CONFIRMED:
                return LedgerResult(reservation, already=True)
            self._ensure_confirmable(reservation, now)

        for item in reservation.items:
            if item.get("tracked"):
                self._log(item, order_id, ChangeType.CONFIRM, 0)
        logger.info(f"确认库存成功: order_id={order_id}")
        return LedgerResult(reservation)

    def _ensure_confirmable(self, reservation: InventoryReservation, now: datetime):
        if reservation.status == ReservationStatus.EXPIRED or (
            reservation.status == ReservationStatus.RESERVED and as_utc(reservation.expires_at) <= now
        ):
            raise conflict("RESERVATION_EXPIRED", "库存预占已过期", {"order_id": reservation.order_id})
        if reservation.status != ReservationStatus.RESERVED:
            raise conflict(
                "RESERVATION_NOT_ACTIVE",
                "库存预占不是待确认状态",
                {"order_id": reservation.order_id, "status": reservation.status.value},
            )

    def release(
        self,
        order_id: str,
        reason: str = "checkout_failed",
        include_confirmed: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[LedgerResult]:
        """释放预占并回补库存（已释放 / 不存在时为空操作）

        include_confirmed 只用于结账补偿：同一请求内刚确认的预占也要回补。
        """
        now = now or utcnow()
        reservation = self.get(order_id)
        if reservation is None:
            logger.info(f"无预占记录，跳过释放: order_id={order_id}")
            return None
        if reservation.status in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED):
            return LedgerResult(reservation, already=True)
        if reservation.status == ReservationStatus.CONFIRMED and not include_confirmed:
            return LedgerResult(reservation, already=True)

        from_statuses = [ReservationStatus.RESERVED]
        if include_confirmed:
            from_statuses.append(ReservationStatus.CONFIRMED)
        released = self._close(reservation, from_statuses, ReservationStatus.RELEASED,
                               reason, ChangeType.RELEASE, now, restock=True)
        if not released:
            return LedgerResult(self.get(order_id), already=True)
        logger.info(f"释放库存成功: order_id={order_id}, reason={reason}")
        return LedgerResult(reservation)

    def restock(self, order_id: str, items: Optional[Iterable] = None, now: Optional[datetime] = None) -> LedgerResult:
        """退货 / 退款回补库存（每个预占只回补一次）"""
        now = now or utcnow()
        reservation = self.get(order_id)
        if reservation is None:
            raise not_found("RESERVATION_NOT_FOUND", "未找到预占记录", {"order_id": order_id})
        if reservation.restocked_at is not None:
            return LedgerResult(reservation, already=True)
        consumed = reservation.status == ReservationStatus.CONFIRMED or (
            reservation.status == ReservationStatus.RELEASED and reservation.release_reason == "stale_confirmed"
        )
        if not consumed:
            raise conflict(
                "RESERVATION_NOT_ACTIVE",
                "只有已确认的预占可以回补库存",
                {"order_id": order_id, "status": reservation.status.value},
            )

        tracked = {
            (i["product_id"], i.get("variant_id")): i
            for i in reservation.items if i.get("tracked")
        }
        if items is None:
            to_restock = list(tracked.values())
        else:
            to_restock = []
            for item in normalize_items(items):
                reserved = tracked.get((item["product_id"], item["variant_id"]))
                if reserved is None or item["quantity"] > reserved["quantity"]:
                    raise bad_request("RESTOCK_ITEMS_MISMATCH", "回补数量超过已售数量", item)
                to_restock.append({**item, "tracked": True})

        result = self.db.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.id == reservation.id,
                InventoryReservation.restocked_at.is_(None),
            )
            .values(restocked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return LedgerResult(self.get(order_id), already=True)

        for item in to_restock:
            self._increment(item)
            self._log(item, order_id, ChangeType.RESTOCK, item["quantity"])
        self._invalidate(to_restock)
        logger.info(f"退货回补库存成功: order_id={order_id}")
        return LedgerResult(self.get(order_id))

    # ------------------------------------------------------------------
    # 清理 / 修复任务
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """回收已过期仍处于 reserved 的预占并回补库存"""
        now = now or utcnow()
        limit = limit or settings.SWEEP_BATCH_SIZE
        # skip_locked 防止多 worker 竞争同一批记录
        expired = self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.expires_at <= now,
            )
            .order_by(InventoryReservation.expires_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        count = 0
        for reservation in expired:
            if self._close(reservation, [ReservationStatus.RESERVED], ReservationStatus.EXPIRED,
                           "expired", ChangeType.EXPIRE, now, restock=True):
                count += 1
        if count:
            logger.info(f"本次回收 {count} 条过期预占")
        return count

    def repair_orphaned(
        self,
        now: Optional[datetime] = None,
        grace_minutes: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> int:
        """宽限期后仍没有对应订单的预占：释放并回补库存"""
        now = now or utcnow()
        grace = settings.ORPHAN_GRACE_MINUTES if grace_minutes is None else grace_minutes
        limit = limit or settings.SWEEP_BATCH_SIZE
        cutoff = now - timedelta(minutes=grace)

        orphans = self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.reserved_at <= cutoff,
                ~exists().where(Order.id == InventoryReservation.order_id),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        count = 0
        for reservation in orphans:
            if self._close(reservation, [ReservationStatus.RESERVED], ReservationStatus.RELEASED,
                           "orphaned", ChangeType.RELEASE, now, restock=True):
                count += 1
        if count:
            logger.warning(f"修复孤儿预占 {count} 条")
        return count

    def cleanup_stale_confirmed(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """订单已取消 / 已退款 / 不存在的已确认预占：标记释放，不回补库存"""
        now = now or utcnow()
        limit = limit or settings.SWEEP_BATCH_SIZE

        stale = self.db.execute(
            select(InventoryReservation)
            .outerjoin(Order, Order.id == InventoryReservation.order_id)
            .where(
                InventoryReservation.status == ReservationStatus.CONFIRMED,
                or_(
                    Order.id.is_(None),
                    Order.status.in_([OrderStatus.CANCELLED, OrderStatus.REFUNDED]),
                ),
            )
            .limit(limit)
        ).scalars().all()

        count = 0
        for reservation in stale:
            if self._close(reservation, [ReservationStatus.CONFIRMED], ReservationStatus.RELEASED,
                           "stale_confirmed", ChangeType.RELEASE, now, restock=False):
                count += 1
        if count:
            logger.info(f"清理已失效的确认预占 {count} 条")
        return count

    # ------------------------------------------------------------------
    # 内部：条件更新
    # ------------------------------------------------------------------

    def _target(self, item: dict):
        if item.get("variant_id") is not None:
            return ProductVariant, item["variant_id"]
        return Product, item["product_id"]

    def _apply_decrements(self, order_id: str, items: List[dict]) -> List[dict]:
        product_ids = sorted({i["product_id"] for i in items})
        products = {
            p.id: p
            for p in self.db.execute(
                select(Product)
                .where(Product.id.in_(product_ids))
                .execution_options(populate_existing=True)
            ).scalars().all()
        }

        applied: List[dict] = []
        for item in items:
            product = products.get(item["product_id"])
            if product is None:
                self._restore(applied)
                raise bad_request("PRODUCT_UNAVAILABLE", "商品不存在", {"product_id": item["product_id"]})
            if not product.track_inventory:
                applied.append({**item, "tracked": False})
                continue
            if not self._decrement(item, allow_backorder=product.allow_backorder):
                self._restore(applied)
                available = self._current_stock(item)
                logger.info(
                    f"库存不足: order_id={order_id}, product_id={item['product_id']}, "
                    f"variant_id={item['variant_id']}, requested={item['quantity']}, available={available}"
                )
                raise out_of_stock_error([{
                    "product_id": item["product_id"],
                    "variant_id": item["variant_id"],
                    "name": product.name,
                    "requested": item["quantity"],
                    "available": max(0, available or 0),
                }])
            applied.append({**item, "tracked": True})
        return applied

    def _decrement(self, item: dict, allow_backorder: bool = False) -> bool:
        model, target_id = self._target(item)
        stmt = update(model).where(model.id == target_id)
        if model is ProductVariant:
            stmt = stmt.where(ProductVariant.product_id == item["product_id"])
        if not allow_backorder:
            stmt = stmt.where(model.stock >= item["quantity"])
        result = self.db.execute(
            stmt.values(stock=model.stock - item["quantity"])
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _increment(self, item: dict):
        model, target_id = self._target(item)
        self.db.execute(
            update(model)
            .where(model.id == target_id)
            .values(stock=model.stock + item["quantity"])
            .execution_options(synchronize_session=False)
        )

    def _restore(self, applied: List[dict]):
        for item in reversed(applied):
            if item.get("tracked"):
                self._increment(item)
        self._invalidate(applied)

    def _current_stock(self, item: dict) -> Optional[int]:
        model, target_id = self._target(item)
        return self.db.execute(select(model.stock).where(model.id == target_id)).scalar_one_or_none()

    def _close(
        self,
        reservation: InventoryReservation,
        from_statuses: List[ReservationStatus],
        to_status: ReservationStatus,
        reason: str,
        change_type: ChangeType,
        now: datetime,
        restock: bool,
    ) -> bool:
        """条件状态迁移；只有迁移成功的一方负责回补库存"""
        result = self.db.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.id == reservation.id,
                InventoryReservation.status.in_(from_statuses),
            )
            .values(status=to_status, released_at=now, release_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.refresh(reservation)
            return False

        if restock:
            for item in reservation.items:
                if item.get("tracked"):
                    self._increment(item)
                    self._log(item, reservation.order_id, change_type, item["quantity"])
            self._invalidate(reservation.items)
        self.db.refresh(reservation)
        return True

    def _log(self, item: dict, order_id: str, change_type: ChangeType, quantity: int):
        after = self._current_stock(item) or 0
        self.db.add(InventoryLog(
            product_id=item["product_id"],
            variant_id=item.get("variant_id"),
            order_id=order_id,
            change_type=change_type,
            quantity=quantity,
            before_available=after - quantity,
            after_available=after,
            source=self.source,
        ))

    def _invalidate(self, items: Iterable[dict]):
        if not self.redis:
            return
        keys = sorted({STOCK_CACHE_KEY.format(i["product_id"]) for i in items})
        if not keys:
            return
        try:
            self.redis.delete(*keys)
            logger.debug(f"Cache invalidated: {keys}")
        except RedisError as e:
            logger.warning(f"库存缓存失效失败: {e}")

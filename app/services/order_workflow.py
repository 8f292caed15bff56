"""履约 / 退款协作方对订单的写入入口

所有状态变更都经过 OrderAggregate 的迁移表和进入条件；
取消与退款顺带处理库存和优惠券预占。
"""

import logging
from datetime import datetime
from typing import Optional

from redis import Redis
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.exceptions import bad_request
from app.models.orders import Order, OrderStatus, StockStatus
from app.services.discount_ledger import DiscountLedger
from app.services.inventory_ledger import InventoryLedger
from app.services.order_aggregate import OrderAggregate

logger = logging.getLogger(__name__)

REFUND_STATUSES = (OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED)


class OrderWorkflow:

    def __init__(self, db: Session, redis: Optional[Redis] = None):
        self.db = db
        self.orders = OrderAggregate(db)
        self.inventory = InventoryLedger(db, redis=redis, source="order_workflow")
        self.discounts = DiscountLedger(db)

    def change_status(
        self,
        order_id: str,
        status: OrderStatus,
        actor: str,
        note: Optional[str] = None,
        refund_amount_minor: Optional[int] = None,
        restock: bool = False,
        now: Optional[datetime] = None,
    ) -> Order:
        now = now or utcnow()
        order = self.orders.get(order_id)

        if status in REFUND_STATUSES:
            if not refund_amount_minor:
                raise bad_request("INVALID_REFUND_AMOUNT", "退款必须提供退款金额")
            self.orders.record_refund(order, refund_amount_minor, actor=actor, now=now)
            if restock and order.stock_status == StockStatus.CONFIRMED:
                self.inventory.restock(order.id, now=now)
        elif status == OrderStatus.CANCELLED:
            self._cancel(order, actor, note, restock, now)
        else:
            self.orders.transition(order, status, actor=actor, note=note, now=now)

        self.db.commit()
        return order

    def _cancel(self, order: Order, actor: str, note: Optional[str], restock: bool, now: datetime):
        # 先校验迁移，再动预占
        self.orders.transition(order, OrderStatus.CANCELLED, actor=actor, note=note, now=now)
        if order.stock_status == StockStatus.RESERVED:
            self.inventory.release(order.id, reason="order_cancelled", now=now)
            self.orders.update(order, stock_status=StockStatus.RELEASED)
            if order.coupon_code:
                self.discounts.release(order.coupon_code, order.id)
        elif order.stock_status == StockStatus.CONFIRMED and restock:
            self.inventory.restock(order.id, now=now)
        logger.info(f"订单已取消: order_id={order.id}, actor={actor}")

    def set_tracking(self, order_id: str, tracking_number: str, carrier: Optional[str] = None) -> Order:
        order = self.orders.get(order_id)
        self.orders.set_tracking(order, tracking_number, carrier)
        self.db.commit()
        return order

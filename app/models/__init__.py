# Models
from .product import Product, ProductVariant
from .inventory_reservations import InventoryReservation, ReservationStatus
from .inventory_logs import InventoryLog, ChangeType
from .coupons import Coupon, DiscountType
from .coupon_reservations import CouponReservation, CouponReservationStatus
from .coupon_redemptions import CouponRedemption, CouponUserUsage
from .campaigns import Campaign, CampaignTarget
from .offers import Offer, OfferType
from .gift_rules import GiftRule
from .shipping_options import DeliveryArea, PickupPoint, StorePickupConfig
from .orders import Order, OrderStatus, PaymentMethod, StockStatus, PaymentStatus
from .idempotency_keys import IdempotencyKey, IdempotencyStatus

__all__ = [
    "Product",
    "ProductVariant",
    "InventoryReservation",
    "ReservationStatus",
    "InventoryLog",
    "ChangeType",
    "Coupon",
    "DiscountType",
    "CouponReservation",
    "CouponReservationStatus",
    "CouponRedemption",
    "CouponUserUsage",
    "Campaign",
    "CampaignTarget",
    "Offer",
    "OfferType",
    "GiftRule",
    "DeliveryArea",
    "PickupPoint",
    "StorePickupConfig",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "StockStatus",
    "PaymentStatus",
    "IdempotencyKey",
    "IdempotencyStatus",
]

"""报价相关的 Pydantic 模型

所有金额字段以最小货币单位（*_minor）保存，主单位镜像（*_major）由 minor 推导。
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from app.core.money import from_minor


class ShippingMode(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP_POINT = "PICKUP_POINT"
    STORE_PICKUP = "STORE_PICKUP"


# ==================== 请求模型 ====================

class CartLineRequest(BaseModel):
    """购物车行"""
    product_id: int = Field(..., gt=0, description="商品ID")
    variant_id: Optional[int] = Field(None, gt=0, description="规格ID")
    quantity: int = Field(..., gt=0, le=999, description="购买数量")


class ShippingSelection(BaseModel):
    """配送方式选择"""
    mode: Optional[ShippingMode] = Field(None, description="配送方式")
    delivery_area_id: Optional[int] = Field(None, description="配送区域ID（DELIVERY）")
    pickup_point_id: Optional[int] = Field(None, description="自提点ID（PICKUP_POINT）")
    address: Optional[str] = Field(None, max_length=500, description="收货地址")


class QuoteRequest(BaseModel):
    """报价 / 结账请求"""
    items: List[CartLineRequest] = Field(default_factory=list, description="购物车行")
    shipping: ShippingSelection = Field(default_factory=ShippingSelection)
    coupon_code: Optional[str] = Field(None, max_length=64, description="优惠码")


# ==================== 报价模型 ====================

class QuoteLine(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    sku: str
    name: str
    variant_name: Optional[str] = None
    category_id: Optional[str] = None
    quantity: int
    unit_price_minor: int
    line_total_minor: int
    on_sale: bool = False

    @computed_field
    @property
    def unit_price_major(self) -> float:
        return from_minor(self.unit_price_minor)

    @computed_field
    @property
    def line_total_major(self) -> float:
        return from_minor(self.line_total_minor)


class ShippingQuote(BaseModel):
    mode: ShippingMode
    option_id: Optional[int] = None
    name: str = ""
    address: Optional[str] = None
    base_fee_minor: int = 0
    fee_minor: int = 0
    free_shipping: bool = False

    @computed_field
    @property
    def fee_major(self) -> float:
        return from_minor(self.fee_minor)


class CouponDiscount(BaseModel):
    code: Optional[str] = None
    amount_minor: int = 0

    @computed_field
    @property
    def amount_major(self) -> float:
        return from_minor(self.amount_minor)


class CampaignDiscount(BaseModel):
    campaign_id: Optional[int] = None
    name: Optional[str] = None
    amount_minor: int = 0

    @computed_field
    @property
    def amount_major(self) -> float:
        return from_minor(self.amount_minor)


class AppliedOffer(BaseModel):
    offer_id: int
    offer_type: str
    name: str = ""
    discount_minor: int = 0
    gift_product_id: Optional[int] = None
    gift_variant_id: Optional[int] = None
    gift_quantity: Optional[int] = None


class OfferDiscount(BaseModel):
    amount_minor: int = 0
    free_shipping: bool = False
    applied: List[AppliedOffer] = Field(default_factory=list)

    @computed_field
    @property
    def amount_major(self) -> float:
        return from_minor(self.amount_minor)


class Discounts(BaseModel):
    coupon: CouponDiscount = Field(default_factory=CouponDiscount)
    campaign: CampaignDiscount = Field(default_factory=CampaignDiscount)
    offer: OfferDiscount = Field(default_factory=OfferDiscount)

    @computed_field
    @property
    def total_minor(self) -> int:
        return self.coupon.amount_minor + self.campaign.amount_minor + self.offer.amount_minor

    @computed_field
    @property
    def total_major(self) -> float:
        return from_minor(self.total_minor)


class GiftLine(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    name: str = ""
    quantity: int
    source: str = "rule"


class GiftWarning(BaseModel):
    type: str
    product_id: int
    variant_id: Optional[int] = None
    requested_quantity: Optional[int] = None
    available_quantity: Optional[int] = None
    granted_quantity: Optional[int] = None
    message: str = ""


class TaxBreakdown(BaseModel):
    rate: float = 0.0
    included_in_prices: bool = True
    tax_minor: int = 0
    total_before_tax_minor: int = 0
    total_after_tax_minor: int = 0

    @computed_field
    @property
    def tax_added_minor(self) -> int:
        """加在净额之上的税额（含税模式为 0）"""
        return 0 if self.included_in_prices else self.tax_minor

    @computed_field
    @property
    def tax_major(self) -> float:
        return from_minor(self.tax_minor)

    @computed_field
    @property
    def total_before_tax_major(self) -> float:
        return from_minor(self.total_before_tax_minor)

    @computed_field
    @property
    def total_after_tax_major(self) -> float:
        return from_minor(self.total_after_tax_minor)


class Quote(BaseModel):
    """报价结果（请求级，只会被复制进订单快照）"""
    currency: str
    lines: List[QuoteLine]
    subtotal_minor: int
    shipping: ShippingQuote
    discounts: Discounts
    gifts: List[GiftLine] = Field(default_factory=list)
    gift_warnings: List[GiftWarning] = Field(default_factory=list)
    tax: TaxBreakdown
    grand_total_minor: int

    @computed_field
    @property
    def shipping_fee_minor(self) -> int:
        return self.shipping.fee_minor

    @computed_field
    @property
    def subtotal_major(self) -> float:
        return from_minor(self.subtotal_minor)

    @computed_field
    @property
    def grand_total_major(self) -> float:
        return from_minor(self.grand_total_minor)

    def reservation_items(self) -> List[dict]:
        """商品行与赠品行合并为一个库存预占条目"""
        items = [
            {"product_id": line.product_id, "variant_id": line.variant_id, "quantity": line.quantity}
            for line in self.lines
        ]
        items.extend(
            {"product_id": gift.product_id, "variant_id": gift.variant_id, "quantity": gift.quantity}
            for gift in self.gifts
        )
        return items

    def blocking_gift_warnings(self) -> List[GiftWarning]:
        return [w for w in self.gift_warnings if w.type == "GIFT_OUT_OF_STOCK"]

"""
Database Schemas for the storefront

Each Pydantic model below the "Collections" marker corresponds to a MongoDB
collection. Collection name is the lowercase class name (stock movements live
in "stock_movement"). Request bodies follow at the end of the module.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

ProductType = Literal["simple", "variable"]
DiscountType = Literal["percentage", "fixed"]
ShippingMethod = Literal["standard", "express"]
CartPaymentMethod = Literal["stripe", "COD"]
PaymentMethod = Literal["COD", "stripe", "applepay"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
AdminOrderStatus = Literal["processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "unpaid", "paid", "failed", "refunded"]

CARD_PAYMENT_METHODS = ("stripe", "applepay")


# Embedded models (not collections on their own)
class Address(BaseModel):
    full_name: str
    phone_number: str
    country: str
    state: Optional[str] = None
    city: str
    area: Optional[str] = None
    street_address: str
    apartment: Optional[str] = None
    postal_code: str
    label: Optional[str] = None


class VariationOption(BaseModel):
    title: str
    price: Optional[float] = Field(None, ge=0)
    quantity: int = Field(0, ge=0)
    sku: Optional[str] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    shipping_fee: float = Field(0, ge=0)
    image: Optional[str] = None


class OrderMetadata(BaseModel):
    """The recognised order metadata keys; anything else is rejected."""

    model_config = ConfigDict(extra="forbid")

    note: Optional[str] = Field(None, max_length=500)
    gift: bool = False
    gift_message: Optional[str] = Field(None, max_length=500)
    source: Optional[Literal["web", "ios", "android"]] = None
    referral_code: Optional[str] = Field(None, max_length=64)


# Collections
class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["customer", "admin"] = "customer"
    addresses: List[Dict] = Field(default_factory=list)


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    on_sale: bool = False
    sale_start: Optional[datetime] = None
    sale_end: Optional[datetime] = None
    product_type: ProductType = "simple"
    quantity: int = Field(0, ge=0)
    variation_options: List[VariationOption] = Field(default_factory=list)
    shipping_fee: float = Field(0, ge=0)

    @model_validator(mode="after")
    def check_sale_price(self):
        if self.sale_price is not None and self.sale_price > self.price:
            raise ValueError("sale_price must not exceed price")
        return self


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    coupon_id: Optional[str] = None
    shipping_method: ShippingMethod = "standard"
    payment_method: CartPaymentMethod = "stripe"
    total: float = 0
    discount: float = 0
    shipping_fee: float = 0
    cod_fee: float = 0
    final_total: float = 0


class Coupon(BaseModel):
    code: str = Field(..., min_length=2, max_length=64)
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_cart_value: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    per_user_limit: int = Field(1, ge=1)
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    is_active: bool = True

    @model_validator(mode="after")
    def normalise_code(self):
        self.code = self.code.strip().upper()
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount_value must be at most 100")
        return self


class Order(BaseModel):
    user_id: str
    order_number: str
    items: List[OrderItem]
    shipping_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    order_status: OrderStatus
    shipping_method: ShippingMethod = "standard"
    subtotal: float = 0
    shipping_fee: float = 0
    cod_fee: float = 0
    discount: float = 0
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    total_amount: float = 0
    payment_intent_id: Optional[str] = None
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)


class StockMovement(BaseModel):
    product_id: str
    delta: int
    reason: Literal["checkout", "cancellation"]
    order_id: Optional[str] = None


# Request bodies
class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: str


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class QuantityIn(BaseModel):
    quantity: int


class CouponCodeIn(BaseModel):
    code: str = Field(..., min_length=1)


class CouponValidateIn(BaseModel):
    code: str = Field(..., min_length=1)
    total_amount: float = Field(..., gt=0)


class MethodIn(BaseModel):
    method: str


class CheckoutIn(BaseModel):
    address_id: str
    payment_method: PaymentMethod = "COD"
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)


class OrderStatusIn(BaseModel):
    status: AdminOrderStatus

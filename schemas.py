"""
Database Schemas for the Wholesale Marketplace (MongoDB)

Each Pydantic model represents a collection in MongoDB. Collection name is the
lowercase of the class name by convention. References to other documents are
kept as ObjectId strings; money is Decimal in Python and Decimal128 in Mongo.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from bson.decimal128 import Decimal128
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from database import encode, utcnow


def _to_decimal(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, float):
        return Decimal(str(value))
    return value


Money = Annotated[Decimal, BeforeValidator(_to_decimal)]


# Enumerations
class UnitType(str, Enum):
    PIECE = "piece"
    BOX = "box"
    CARTON = "carton"
    KG = "kg"
    LITER = "liter"
    METER = "meter"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Wholesaler-driven fulfillment path, in order.
FULFILLMENT_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentTerms(str, Enum):
    IMMEDIATE = "immediate"
    NET_30 = "net_30"
    NET_60 = "net_60"
    NET_90 = "net_90"


PAYMENT_TERM_DAYS = {
    PaymentTerms.IMMEDIATE: 0,
    PaymentTerms.NET_30: 30,
    PaymentTerms.NET_60: 60,
    PaymentTerms.NET_90: 90,
}


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestedBy(str, Enum):
    RETAILER = "retailer"
    WHOLESALER = "wholesaler"
    SALESMAN = "salesman"


class Role(str, Enum):
    WHOLESALER = "wholesaler"
    RETAILER = "retailer"
    SALESMAN = "salesman"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return encode(self.model_dump(exclude={"id"}))


# Identity & roles
class WholesalerProfile(Document):
    business_name: str = Field(..., min_length=1)
    owner_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: str = Field(..., min_length=5)
    gst_number: Optional[str] = None
    business_address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    business_type: str = "wholesaler"
    is_verified: bool = False
    minimum_order_value: Money = Decimal("0")
    payment_terms: PaymentTerms = PaymentTerms.IMMEDIATE


class Wholesaler(WholesalerProfile):
    password: str


class RetailerProfile(Document):
    business_name: str = Field(..., min_length=1)
    owner_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: str = Field(..., min_length=5)
    phone_alt1: str = ""
    phone_alt2: str = ""
    gst_number: Optional[str] = None
    business_address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    credit_limit: Money = Decimal("0")
    outstanding_amount: Money = Decimal("0")
    is_verified: bool = False
    requires_password_setup: bool = False


class Retailer(RetailerProfile):
    password: str


class SalesmanPermissions(BaseModel):
    can_add_products: bool = True
    can_delete_products: bool = False
    can_add_brands: bool = True
    can_add_retailers: bool = True
    can_delete_retailers: bool = False
    can_view_all_retailers: bool = True
    can_place_orders: bool = True


class SalesmanProfile(Document):
    wholesaler_id: str
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: str = Field(..., min_length=5)
    requires_password_setup: bool = False
    is_active: bool = True
    permissions: SalesmanPermissions = Field(default_factory=SalesmanPermissions)

    @field_validator("permissions", mode="before")
    @classmethod
    def _default_permissions(cls, value):
        return value or {}


class Salesman(SalesmanProfile):
    password: str


# Catalog
class PriceTier(BaseModel):
    min_quantity: int = Field(..., ge=1)
    max_quantity: Optional[int] = None  # None means no upper limit
    price_per_unit: Money = Field(..., ge=0)

    @model_validator(mode="after")
    def _check_range(self):
        if self.max_quantity is not None and self.max_quantity < self.min_quantity:
            raise ValueError("max_quantity must be greater than or equal to min_quantity")
        return self


class Product(Document):
    wholesaler_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str = Field(..., min_length=1)
    subcategory: str = ""
    brand: str = ""
    sku: Optional[str] = None
    unit_type: UnitType = UnitType.PIECE
    moq: int = Field(1, ge=1)
    stock_quantity: int = Field(0, ge=0)
    pricing_tiers: List[PriceTier] = Field(..., min_length=1)
    base_price: Money = Field(..., ge=0)
    mrp: Money = Decimal("0")
    gst_percentage: Money = Field(Decimal("18"), ge=0, le=100)
    hsn_code: str = ""
    image_url: str = ""
    is_active: bool = True
    created_by_salesman: Optional[str] = None
    updated_by_salesman: Optional[str] = None


class Brand(Document):
    wholesaler_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    image_url: str = ""


class Category(Document):
    name: str = Field(..., min_length=1, max_length=100)
    created_by: Optional[str] = None
    is_default: bool = False


# Connections
class Connection(Document):
    wholesaler_id: str
    retailer_id: str
    salesman_id: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.PENDING
    requested_by: RequestedBy
    message: str = ""


# Carts
class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: Money


class Cart(Document):
    retailer_id: str
    salesman_id: Optional[str] = None
    wholesaler_id: Optional[str] = None
    items: List[CartItem] = []


# Orders
class OrderItem(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Money
    gst_amount: Money = Decimal("0")
    total_price: Money


class Order(Document):
    order_number: str
    retailer_id: str
    wholesaler_id: str
    placed_by_salesman: Optional[str] = None
    items: List[OrderItem] = []
    subtotal: Money
    gst_amount: Money
    total_amount: Money
    delivery_address: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_terms: PaymentTerms = PaymentTerms.IMMEDIATE
    payment_due_date: Optional[datetime] = None
    notes: str = ""

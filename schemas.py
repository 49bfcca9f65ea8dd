"""
Database Schemas for the Restaurant Chat-Bot Ordering API

Each Pydantic model maps to a MongoDB collection (lowercased class name)
- Tenant -> tenant
- Category -> category
- CatalogProduct -> catalog
- Order -> order
- OrderEvent -> orderevent (outbox of notifications for the messaging gateway)

Request bodies live at the bottom of the module.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal['pending', 'confirmed', 'preparing', 'delivering', 'completed', 'cancelled']
PaymentMethod = Literal['pix', 'credit-card', 'cash']
ProductType = Literal['standard', 'pizza', 'hamburger']

ORDER_STATUSES = ('pending', 'confirmed', 'preparing', 'delivering', 'completed', 'cancelled')
PAYMENT_METHODS = ('pix', 'credit-card', 'cash')


class TenantContact(BaseModel):
    email: EmailStr
    phone: Optional[str] = Field(None, description="Owner phone, receives new-order alerts")
    address: Optional[str] = None


class Tenant(BaseModel):
    """Restaurant account. Every order, product and category is scoped by tenant."""
    name: str
    slug: str
    api_key: str = Field(..., description="Key the chat-bot sends in X-API-Key")
    active: bool = True
    contact: TenantContact


class Category(BaseModel):
    tenant_id: str
    name: str
    slug: str
    active: bool = True


class SizePrice(BaseModel):
    size_name: str
    price: float = Field(..., ge=0)


class CatalogProduct(BaseModel):
    tenant_id: str
    name: str
    price: float = Field(0, ge=0)
    available: bool = True
    category_id: Optional[str] = None
    product_type: ProductType = 'standard'
    sizes_prices: List[SizePrice] = []


class ItemOption(BaseModel):
    name: str
    price: float = Field(0, ge=0, description="Price snapshot at order time")


class OrderItem(BaseModel):
    product_id: Optional[str] = Field(None, description="Links to catalog._id, absent for custom items")
    name: str
    flavor: Optional[str] = None
    size: Optional[str] = Field(None, description="Chosen size, checked against the product's sizes_prices")
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0, description="Price snapshot at order time")
    options: List[ItemOption] = []


class Customer(BaseModel):
    name: str
    phone: str = Field(..., description="Customer identity key for statistics")
    address: Optional[str] = None


class NoteEntry(BaseModel):
    at: datetime
    author: str
    text: str


class Order(BaseModel):
    tenant_id: str
    order_number: str = Field(..., description="ORD-YYYYMMDD-NNN, unique per tenant")
    status: OrderStatus = 'pending'
    customer: Customer
    items: List[OrderItem]
    payment_method: PaymentMethod
    change_for: Optional[float] = Field(None, ge=0)
    delivery_fee: float = Field(0, ge=0)
    subtotal: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    rating: Optional[int] = Field(None, ge=1, le=5)
    note_log: List[NoteEntry] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderEvent(BaseModel):
    tenant_id: str
    order_number: Optional[str] = None
    type: Literal['new_order', 'status_changed']
    status: Optional[str] = None
    phone: str
    message: str


# ---------------------- Request bodies ----------------------
class CustomerIn(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class OrderCreate(BaseModel):
    """Order as sent by the chat-bot. subtotal/total are never accepted from clients."""
    customer: CustomerIn = CustomerIn()
    items: List[OrderItem] = []
    payment_method: str
    change_for: Optional[float] = Field(None, ge=0)
    delivery_fee: float = Field(0, ge=0)
    notes: Optional[str] = None


class RateOrderBody(BaseModel):
    rating: int
    comment: Optional[str] = None


class UpdateOrderStatusBody(BaseModel):
    status: OrderStatus


class AppendNoteBody(BaseModel):
    note: str = ""

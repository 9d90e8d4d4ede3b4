"""
Database Schemas for the Canvas Store

Collections:
- user: customers, curators and admins (persisted cart lives on the user)
- product: canvas catalog with size variants
- order: immutable line snapshots, mutable status/payment_status
- note: sticky-note feedback left by curators on storefront pages
- upload: curator image submissions awaiting admin review

Money is always an integer in minor units (cents).
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from roles import Role


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(Role.user, description="user, curator, admin or super_admin")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Identity(BaseModel):
    """Authenticated caller as seen by the core: an id and an opaque role."""
    user_id: str
    role: str


# ---------- Catalog ----------

class ProductVariant(BaseModel):
    label: str = Field(..., description="Size/frame descriptor, e.g. 16x20")
    price_minor_units: Optional[int] = Field(None, ge=0, description="Overrides the base price")


class Product(BaseModel):
    product_id: str = Field(..., description="Public product id, e.g. '7'")
    name: str
    slug: Optional[str] = None
    category: str = Field("archival", description="archival, experimental, limited, portrait, urban")
    description: Optional[str] = None
    price_minor_units: int = Field(..., ge=0, description="Base price in cents")
    image: str = Field("", description="Primary image URL")
    variants: List[ProductVariant] = Field(default_factory=list)
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price_minor_units: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    variants: Optional[List[ProductVariant]] = None
    is_active: Optional[bool] = None


class CatalogEntry(BaseModel):
    product_id: str
    name: str
    unit_price_minor_units: int = Field(..., ge=0)
    image_ref: str = ""
    variant_labels: List[str] = Field(default_factory=list)


# ---------- Cart ----------

class LineItem(BaseModel):
    product_id: str
    variant_label: str
    name: str = ""
    unit_price_minor_units: int = Field(..., ge=0)
    # 0 is allowed: update_quantity keeps zeroed lines visible
    quantity: int = Field(1, ge=0)
    image_ref: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product_id, self.variant_label)

    @property
    def subtotal(self) -> int:
        return self.unit_price_minor_units * self.quantity


class CartEntry(BaseModel):
    """Persisted server-side cart row (user.cart[])."""
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: str


class CartEntryIn(BaseModel):
    product_id: str
    variant: str
    quantity: int = Field(1, ge=1)


class CartEntryKey(BaseModel):
    product_id: str
    variant: str


# ---------- Orders ----------

class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field("US", min_length=1)


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    unit_price_minor_units: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    variant_label: str


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Customer user id or None for guest")
    lines: Tuple[OrderLine, ...]
    total_minor_units: int = Field(..., ge=0)
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_method: str = ""
    shipping_address: ShippingAddress
    created_at: datetime
    updated_at: Optional[datetime] = None


class CheckoutItem(BaseModel):
    product_id: str
    variant: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(default_factory=list)
    shipping_address: dict = Field(default_factory=dict)
    payment_method: str = Field(..., description="Opaque gateway reference")
    customer_email: Optional[EmailStr] = None


class StatusUpdate(BaseModel):
    status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


# ---------- Moderation ----------

NoteColor = Literal["yellow", "blue", "green", "pink", "orange"]


class Note(BaseModel):
    id: Optional[str] = None
    content: str = Field(..., max_length=500)
    author: Optional[str] = None
    author_role: str
    page: str = Field(..., description="URL path where the note was placed")
    position_x: float = Field(..., ge=0, le=100)
    position_y: float = Field(..., ge=0, le=100)
    color: NoteColor = "yellow"
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NoteIn(BaseModel):
    content: str
    page: str
    position_x: float
    position_y: float
    color: str = "yellow"


class NoteResolve(BaseModel):
    note_id: str
    resolved: bool


class UploadStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class Upload(BaseModel):
    id: Optional[str] = None
    product_id: str
    original_filename: str
    stored_filename: str
    image_path: str
    mime_type: Literal["image/jpeg", "image/png", "image/webp"]
    file_size: int = Field(..., ge=0)
    submitted_by: Optional[str] = None
    submitted_by_role: str
    status: UploadStatus = UploadStatus.pending
    reviewed_by: Optional[str] = None
    review_note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadReview(BaseModel):
    upload_id: str
    status: str
    review_note: Optional[str] = None

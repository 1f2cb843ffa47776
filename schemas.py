"""
Database Schemas for the Sachio operations dashboard

Each collection model below documents what the dashboard writes. Attributes
are snake_case in Python and camelCase in the store (the mobile clients read
the same documents), so models are dumped with `by_alias=True`.

Collection names are fixed strings (see COLLECTIONS), not derived from the
class names.
"""
from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

COLLECTIONS = [
    "orders",
    "products",
    "categories",
    "gallery",
    "users",
    "driverLocations",
    "staffAccounts",
    "staffSessions",
    "announcements",
    "alerts",
    "operations",
    "dashboardStats",
    "mailQueue",
    "reviews",
]

OrderStatusOption = Literal[
    "processing",
    "dispatched",
    "in_transit",
    "delivered",
    "completed",
    "cancelled_by_admin",
    "waiting_admin_price",
    "price_set",
    "paid",
]


class StoreModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===================== Collection documents =====================

class Product(StoreModel):
    title: str = Field(..., min_length=1, description="Product title")
    price: float = Field(..., ge=0, description="Price in NGN")
    category: str = Field("General", description="Category name")
    description: str = ""
    image_url: Optional[str] = None
    in_stock: bool = True
    rating_avg: float = 0.0
    rating_count: int = 0


class Category(StoreModel):
    name: str = Field(..., min_length=1, description="Category name")
    segment: str = Field("General", description="Market segment")
    count: int = Field(0, ge=0, description="Units in this category")
    description: str = ""
    image_url: Optional[str] = None


class GalleryItem(StoreModel):
    title: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1)


class StaffAccount(StoreModel):
    email: EmailStr
    name: Optional[str] = None
    role: Literal["staff"] = "staff"
    blocked: bool = False
    password_hash: str = Field(..., description="passlib bcrypt hash")
    created_by: Optional[str] = None


class StaffSession(StoreModel):
    email: EmailStr
    role: str = "staff"
    status: Literal["online", "offline"] = "online"
    last_active: datetime


class Announcement(StoreModel):
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    audience: Literal["all", "user"] = "all"
    target_user_id: Optional[str] = None


class MailQueueItem(StoreModel):
    to: EmailStr
    subject: str
    text: str


class OperationalMetric(StoreModel):
    label: str
    value: int
    updated_at: datetime


# ===================== Request bodies =====================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class StaffCreate(StoreModel):
    email: EmailStr
    name: Optional[str] = None
    password: str = Field(..., min_length=6)


class ProductUpdate(StoreModel):
    title: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: str = "General"
    description: str = ""
    image_url: Optional[str] = None
    in_stock: bool = True


class CategoryUpdate(StoreModel):
    name: str = Field(..., min_length=1)
    segment: Optional[str] = None
    count: Optional[int] = Field(None, ge=0)
    description: str = ""
    image_url: Optional[str] = None


class AnnouncementCreate(StoreModel):
    title: str
    message: str
    audience: Literal["all", "user"] = "all"
    target_user_id: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatusOption


class PriceUpdate(BaseModel):
    amount: float


class DriverAssignment(StoreModel):
    driver_id: Optional[str] = Field(None, description="Empty or null unassigns the driver")


class DestinationUpdate(BaseModel):
    """
    Exactly one way of choosing a destination:
    - address only: geocode the free text
    - lat/lng only: map click or marker drag, reverse-geocoded
    - address + lat/lng: store as given
    """
    address: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class Alert(BaseModel):
    title: str
    tone: Literal["red", "amber", "emerald"] = "red"


class Lane(BaseModel):
    label: str
    value: int


class RevenueTotals(BaseModel):
    daily: float = 0
    monthly: float = 0
    yearly: float = 0


class DashboardSnapshot(StoreModel):
    stats: List[dict]
    orders: List[dict]
    products: List[dict]
    categories: List[dict]
    lanes: List[Lane]
    alerts: List[Alert]
    revenue_trend: List[dict]
    revenue_totals: RevenueTotals
    source: Literal["live", "snapshot"] = "live"
    error: Optional[str] = None
    last_updated: datetime

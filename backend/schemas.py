"""
Database Schemas for the Westgate Marketplace
Each Pydantic model represents a MongoDB collection row. Storage shapes are the
plain classes; the *Record classes are the typed rows handed out by the data
access layer, with the platform-managed id/timestamps and joined entities.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

Role = Literal["customer", "retailer", "service-provider"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
MessageType = Literal["text", "image"]
SortKey = Literal["price-asc", "price-desc", "newest", "rating", "popularity"]

ROLES = ("customer", "retailer", "service-provider")
ALL_CATEGORIES = "All Categories"
ALL_AREAS = "All Areas"


class Coordinates(BaseModel):
    lat: float
    lng: float


class Location(BaseModel):
    city: str
    area: str
    address: str = ""
    coordinates: Optional[Coordinates] = None


# Users
class User(BaseModel):
    email: EmailStr
    name: str
    role: Role = Field(default="customer", description="customer | retailer | service-provider")
    avatar_url: Optional[str] = None
    city: str = ""
    area: str = ""
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class UserRecord(User):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def location(self) -> Location:
        return Location(city=self.city, area=self.area, address=self.address or "", coordinates=self.coordinates)


# Reviews
class Review(BaseModel):
    user_id: str
    product_id: Optional[str] = None
    service_id: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    comment: str = ""

    @model_validator(mode="after")
    def _one_target(self):
        if (self.product_id is None) == (self.service_id is None):
            raise ValueError("a review targets exactly one of product_id or service_id")
        return self


class ReviewRecord(Review):
    id: str
    user: Optional[UserRecord] = None
    created_at: Optional[datetime] = None


# Products
class Product(BaseModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    images: List[str] = Field(default_factory=list)
    category: str
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    availability: int = Field(default=0, ge=0, description="units in stock")
    seller_id: str
    delivery_time: str = ""
    payment_options: List[str] = Field(default_factory=list)
    promoted: bool = False


class ProductRecord(Product):
    id: str
    seller: Optional[UserRecord] = None
    reviews: List[ReviewRecord] = Field(default_factory=list)
    rating: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Services
class ServiceAvailability(BaseModel):
    date: str = Field(..., description="ISO date, e.g. 2024-02-01")
    time_slots: List[str] = Field(default_factory=list)


class Service(BaseModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    duration: int = Field(ge=1, description="minutes")
    category: str
    provider_id: str


class ServiceRecord(Service):
    id: str
    provider: Optional[UserRecord] = None
    availability: List[ServiceAvailability] = Field(default_factory=list)
    reviews: List[ReviewRecord] = Field(default_factory=list)
    rating: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Orders
class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    color: Optional[str] = None
    size: Optional[str] = None


class OrderItemRecord(OrderItem):
    id: str
    order_id: str
    product: Optional[ProductRecord] = None


class Order(BaseModel):
    customer_id: str
    total: float = Field(ge=0)
    status: OrderStatus = "pending"
    delivery_city: str
    delivery_area: str
    delivery_address: str


class OrderRecord(Order):
    id: str
    order_items: List[OrderItemRecord] = Field(default_factory=list)
    customer: Optional[UserRecord] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Bookings
class Booking(BaseModel):
    customer_id: str
    service_id: str
    date: str
    time: str
    status: BookingStatus = "pending"
    total: float = Field(ge=0)


class BookingRecord(Booking):
    id: str
    customer: Optional[UserRecord] = None
    service: Optional[ServiceRecord] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Chat messages
class Message(BaseModel):
    sender_id: str
    recipient_id: str
    content: str
    type: MessageType = "text"
    image_url: Optional[str] = None
    read: bool = False
    client_id: Optional[str] = Field(default=None, description="client correlation id for optimistic sends")


class MessageRecord(Message):
    id: str
    sender: Optional[UserRecord] = None
    recipient: Optional[UserRecord] = None
    created_at: Optional[datetime] = None


class Conversation(BaseModel):
    id: str = Field(..., description="the counterpart user id")
    other_user: Optional[UserRecord] = None
    messages: List[MessageRecord] = Field(default_factory=list)
    last_message: Optional[MessageRecord] = None
    unread_count: int = 0


# Search
class SearchFilters(BaseModel):
    query: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    rating: Optional[float] = None
    availability: bool = False
    new_arrivals: bool = False
    sort_by: Optional[SortKey] = None

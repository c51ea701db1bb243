"""
Database Schemas

MongoDB collection schemas for the café API, defined as Pydantic models.
Model name is converted to lowercase for the collection name:
- User -> "user" collection (with the embedded cart)
- Product -> "product" collection
- Order -> "order" collection
- Reservation -> "reservation" collection
- LoginLog -> "loginlog" collection
- Notification -> "notification" collection
- Feedback -> "feedback" collection

Cart and order line items are snapshots of product data taken when the item
is added or the order is placed. They are never re-read from the product.
"""

from datetime import datetime
from typing import Optional, List, Literal

from pydantic import BaseModel, Field, EmailStr

Role = Literal["customer", "admin", "staff", "owner"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
ReservationStatus = Literal["confirmed", "cancelled", "completed", "no-show"]


class LineItem(BaseModel):
    """Product snapshot shared by cart entries and order items"""
    productId: str = Field(..., description="Product ObjectId as string (weak reference)")
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    temperature: Optional[str] = None
    image: Optional[str] = None


class CartItem(LineItem):
    addedAt: Optional[datetime] = None


class OrderItem(LineItem):
    pass


class OrderCustomerInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""


class ReservationCustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: Optional[str] = Field(None, description="Password hash (absent for Google sign-in)")
    googleId: Optional[str] = Field(None, description="Google account subject id")
    role: Role = Field("customer", description="Role: customer | admin | staff | owner")
    cart: List[dict] = Field(default_factory=list, description="Embedded cart line items")
    is_active: bool = Field(True, description="Whether user is active")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    price: float = Field(..., ge=0, description="Base price")
    description: str = Field(..., description="Product description")
    category: str = Field("Uncategorized", description="Menu category")
    image: str = Field("", description="Image URL")
    stock: int = Field(0, ge=0, description="Units in stock (informational only)")
    isAvailable: bool = Field(True, description="Shown as orderable")
    isArchived: bool = Field(False, description="Soft-deleted from default listings")
    archivedAt: Optional[datetime] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    orderId: str = Field(..., description="Human readable id, ORD-<ms>-<random>")
    userId: str = Field(..., description="Owner User ObjectId as string")
    items: List[OrderItem]
    totalPrice: float = Field(..., ge=0)
    customerInfo: OrderCustomerInfo
    status: OrderStatus = "pending"
    paymentStatus: PaymentStatus = "pending"
    cancelRequested: bool = False
    cancelRequestedAt: Optional[datetime] = None
    notes: Optional[str] = None


class Reservation(BaseModel):
    """
    Reservations collection schema
    Collection name: "reservation"
    """
    reservationId: str = Field(..., description="Human readable id, RES-<ms>-<random>")
    userId: str = Field(..., description="Owner User ObjectId as string")
    customerInfo: ReservationCustomerInfo
    date: str = Field(..., description="Reservation day, YYYY-MM-DD")
    time: str = Field(..., description="Reservation time as entered, e.g. 18:30")
    guests: int = Field(..., ge=1, le=20)
    tableId: Optional[str] = None
    status: ReservationStatus = "confirmed"
    specialRequests: Optional[str] = None
    cancelledAt: Optional[datetime] = None


class LoginLog(BaseModel):
    """
    Append-only audit trail of login attempts
    Collection name: "loginlog"
    """
    userId: Optional[str] = None
    email: str
    userName: str = "Unknown User"
    role: Literal["customer", "admin", "staff", "owner", "unknown"] = "unknown"
    status: Literal["success", "failed"]
    ipAddress: str = "Unknown"
    device: str = "Unknown"
    userAgent: Optional[str] = None
    failureReason: Optional[str] = None


class Notification(BaseModel):
    """
    Status-change notices for customers, read by polling
    Collection name: "notification"
    """
    userId: str
    type: Literal["order", "reservation"]
    referenceId: str
    referenceNumber: str
    title: str
    message: str
    status: Optional[str] = None
    read: bool = False


class Feedback(BaseModel):
    """
    Customer feedback on a placed order
    Collection name: "feedback"
    """
    feedbackId: str = Field(..., description="Human readable id, FB-<ms>-<random>")
    userId: str
    orderId: str = Field(..., description="orderId of the order being reviewed")
    customerInfo: dict = Field(default_factory=dict, description="name/email snapshot of the author")
    rating: int = Field(..., ge=1, le=5)
    feedbackType: Literal["food", "service", "ambiance", "delivery", "general"]
    message: str = Field(..., min_length=1)
    status: Literal["pending", "reviewed", "resolved"] = "pending"
    adminNotes: str = ""

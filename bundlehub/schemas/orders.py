from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.order import OrderStatus

class ApproveOrderRequest(BaseModel):
    notes: Optional[str] = None

class RejectOrderRequest(BaseModel):
    reason: str = Field(..., description="Shown to the buyer in the rejection email")

class OrderItemResponse(BaseModel):
    bundle_id: str
    quantity: int
    price: Decimal

    class Config:
        from_attributes = True

class OrderResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    email: str
    customer_name: str
    total_amount: Decimal
    status: OrderStatus
    email_verified: bool
    payment_screenshot: Optional[str] = None
    admin_notes: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination

class DecisionResponse(BaseModel):
    success: bool = True
    message: str
    orderId: str
    status: str

from __future__ import annotations

from datetime import date as date_type, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .validation import PaymentStatus, SessionStatus


class SessionItem(BaseModel):
    name: str
    qty: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")
    line_total: Optional[Decimal] = None

    def revenue(self) -> Decimal:
        if self.line_total is not None:
            return self.line_total
        return self.qty * self.unit_price


class BillingSession(BaseModel):
    id: str
    merchant_id: str
    status: SessionStatus = "ACTIVE"
    payment_status: PaymentStatus = "PENDING"
    payment_confirmed: bool = False
    items: list[SessionItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_time: Optional[datetime] = None
    # First entry is the scanning customer; empty for walk-in checkout.
    connected_customers: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    receipt_generated: bool = False
    receipt_id: Optional[str] = None


class MerchantProfile(BaseModel):
    id: str
    business_name: Optional[str] = None
    logo_url: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    category: Optional[str] = None
    timezone: Optional[str] = None


class Receipt(BaseModel):
    receipt_id: str
    session_id: str
    merchant_id: str
    merchant_name: str = "MY BUSINESS"
    merchant_logo: Optional[str] = None
    merchant_address: Optional[str] = None
    merchant_phone: Optional[str] = None
    merchant_tax_id: Optional[str] = None
    merchant_category: str = "Other"
    customer_id: Optional[str] = None
    items: list[SessionItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_status: PaymentStatus = "PAID"
    payment_time: Optional[datetime] = None
    is_verified: bool = False
    created_at: Optional[datetime] = None
    migrated_at: Optional[datetime] = None


class ItemSold(BaseModel):
    name: str
    qty: Decimal
    revenue: Decimal


class DailyAggregate(BaseModel):
    merchant_id: str
    date: date_type
    total: Decimal = Decimal("0")
    orders_count: int = 0
    items_sold: list[ItemSold] = Field(default_factory=list)

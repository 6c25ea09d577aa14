import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..deps import get_pipeline
from ..models import BillingSession, SessionItem
from ..pipeline import Pipeline
from ..validation import PaymentMethod, PaymentStatus

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    qty: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    line_total: Optional[Decimal] = Field(default=None, ge=0)


class SessionCreateIn(BaseModel):
    id: Optional[str] = None
    merchant_id: str = Field(min_length=1)
    items: List[SessionItemIn] = []
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(default=Decimal("0"), ge=0)
    # PAID here is an instant walk-in checkout (e.g. cash at the counter).
    payment_status: PaymentStatus = "PENDING"
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    connected_customers: List[str] = []
    expires_in_minutes: int = Field(default=30, ge=1, le=24 * 60)


class PaymentConfirmIn(BaseModel):
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None


@router.post("")
def create_session(data: SessionCreateIn, pipeline: Pipeline = Depends(get_pipeline)):
    if data.payment_status == "FAILED":
        raise HTTPException(status_code=400, detail="a session cannot be created as FAILED")
    now = datetime.now(timezone.utc)
    paid = data.payment_status == "PAID"
    session = BillingSession(
        id=(data.id or "").strip() or uuid.uuid4().hex,
        merchant_id=data.merchant_id,
        status="ACTIVE",
        payment_status=data.payment_status,
        payment_confirmed=paid,
        items=[
            SessionItem(
                name=i.name,
                qty=i.qty,
                unit_price=i.unit_price,
                line_total=i.line_total if i.line_total is not None else i.qty * i.unit_price,
            )
            for i in data.items
        ],
        subtotal=data.subtotal,
        tax=data.tax,
        total=data.total,
        payment_method=data.payment_method,
        transaction_id=data.transaction_id,
        payment_time=now if paid else None,
        connected_customers=[c for c in data.connected_customers if (c or "").strip()],
        created_at=now,
        expires_at=now + timedelta(minutes=data.expires_in_minutes),
        updated_at=now,
    )
    return pipeline.store.create_session(session)


@router.get("/{session_id}")
def get_session(session_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    session = pipeline.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session


@router.post("/{session_id}/confirm-payment")
def confirm_payment(session_id: str, data: PaymentConfirmIn, pipeline: Pipeline = Depends(get_pipeline)):
    """Client-side payment confirmation (the customer's UPI app reported success)."""
    res = pipeline.store.update_session(
        session_id,
        {
            "payment_status": "PAID",
            "payment_confirmed": True,
            "payment_method": data.payment_method,
            "transaction_id": data.transaction_id,
            "payment_time": datetime.now(timezone.utc),
        },
        expected_payment_status=["PENDING", "FAILED"],
    )
    if res is not None:
        return res[1]
    session = pipeline.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    # Already settled: confirming twice is a no-op.
    return session

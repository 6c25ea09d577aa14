import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Literal, Optional

from .errors import PersistenceError
from .idempotency import IdempotencyGuard
from .logs import json_log
from .models import BillingSession, MerchantProfile, Receipt
from .store import SessionStore

DEFAULT_MERCHANT_NAME = "MY BUSINESS"


class MerchantCategory(str, Enum):
    RESTAURANT = "Restaurant"
    RETAIL = "Retail"
    GROCERY = "Grocery"
    PHARMACY = "Pharmacy"
    ELECTRONICS = "Electronics"
    CLOTHING = "Clothing"
    SERVICES = "Services"
    ENTERTAINMENT = "Entertainment"
    OTHER = "Other"


_CATEGORY_SYNONYMS = {
    "restaurant": MerchantCategory.RESTAURANT,
    "retail": MerchantCategory.RETAIL,
    "grocery": MerchantCategory.GROCERY,
    "groceries": MerchantCategory.GROCERY,
    "pharmacy": MerchantCategory.PHARMACY,
    "healthcare": MerchantCategory.PHARMACY,
    "electronics": MerchantCategory.ELECTRONICS,
    "clothing": MerchantCategory.CLOTHING,
    "fashion": MerchantCategory.CLOTHING,
    "services": MerchantCategory.SERVICES,
    "entertainment": MerchantCategory.ENTERTAINMENT,
    "other": MerchantCategory.OTHER,
    "general": MerchantCategory.OTHER,
}


def normalize_category(raw: Optional[str]) -> str:
    """Canonical display category; unknown values pass through verbatim, empty becomes Other."""
    key = (raw or "").strip().lower()
    if not key:
        return MerchantCategory.OTHER.value
    match = _CATEGORY_SYNONYMS.get(key)
    return match.value if match is not None else raw


def new_receipt_id(now: Optional[datetime] = None) -> str:
    ms = int((now.timestamp() if now else time.time()) * 1000)
    return f"rcpt_{ms}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class ReceiptResult:
    outcome: Literal["created", "already_exists", "skipped", "failed"]
    receipt_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def has_receipt(self) -> bool:
        return self.outcome in {"created", "already_exists"}


def build_receipt(
    receipt_id: str,
    session: BillingSession,
    merchant: Optional[MerchantProfile],
    now: datetime,
) -> Receipt:
    m = merchant or MerchantProfile(id=session.merchant_id)
    return Receipt(
        receipt_id=receipt_id,
        session_id=session.id,
        merchant_id=session.merchant_id,
        merchant_name=(m.business_name or "").strip() or DEFAULT_MERCHANT_NAME,
        merchant_logo=m.logo_url,
        merchant_address=m.address,
        merchant_phone=m.phone,
        merchant_tax_id=m.tax_id,
        merchant_category=normalize_category(m.category),
        customer_id=session.connected_customers[0] if session.connected_customers else None,
        items=list(session.items),
        subtotal=session.subtotal,
        tax=session.tax,
        total=session.total,
        payment_method=session.payment_method,
        transaction_id=session.transaction_id,
        payment_status="PAID",
        payment_time=session.payment_time or now,
        is_verified=bool(session.payment_confirmed),
        created_at=now,
    )


class ReceiptGenerator:
    def __init__(
        self,
        store: SessionStore,
        guard: Optional[IdempotencyGuard] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._guard = guard or IdempotencyGuard(store)
        self._clock = clock

    def _merchant(self, merchant_id: str) -> Optional[MerchantProfile]:
        # A missing profile degrades the receipt's display fields; it never blocks the receipt.
        try:
            return self._store.get_merchant(merchant_id)
        except PersistenceError as ex:
            json_log("warning", "receipt.merchant_lookup_failed", merchant_id=merchant_id, error=str(ex))
            return None

    def generate(self, session_id: str, session: BillingSession) -> ReceiptResult:
        if session.payment_status != "PAID":
            return ReceiptResult("skipped", reason="not_paid")

        try:
            existing = self._guard.existing(session_id)
            if existing is not None:
                return ReceiptResult("already_exists", receipt_id=existing.receipt_id)

            now = self._clock()
            merchant = self._merchant(session.merchant_id)
            receipt = build_receipt(new_receipt_id(now), session, merchant, now)
            claim = self._guard.claim(receipt)
        except PersistenceError as ex:
            json_log("error", "receipt.generate.failed", session_id=session_id, error=str(ex))
            return ReceiptResult("failed", reason=ex.reason, error=ex)

        if not claim.created:
            json_log(
                "info",
                "receipt.generate.lost_race",
                session_id=session_id,
                receipt_id=claim.receipt.receipt_id,
            )
            return ReceiptResult("already_exists", receipt_id=claim.receipt.receipt_id)

        receipt_id = claim.receipt.receipt_id
        try:
            self._mark_session(session_id, receipt_id)
        except PersistenceError as ex:
            # The receipt exists; repair_unmarked_sessions() fixes the session flag later.
            json_log("error", "receipt.session_mark_failed", session_id=session_id, receipt_id=receipt_id, error=str(ex))
        json_log("info", "receipt.created", session_id=session_id, receipt_id=receipt_id)
        return ReceiptResult("created", receipt_id=receipt_id)

    def _mark_session(self, session_id: str, receipt_id: str) -> None:
        self._store.update_session(
            session_id,
            {"receipt_generated": True, "receipt_id": receipt_id},
            emit=False,
        )

    def repair_unmarked_sessions(self, limit: int = 200) -> int:
        """Mark sessions whose receipt was written but whose flag update never landed."""
        repaired = 0
        for receipt in self._store.receipts_with_unmarked_sessions(limit):
            self._mark_session(receipt.session_id, receipt.receipt_id)
            repaired += 1
        if repaired:
            json_log("info", "receipt.repair.sessions_marked", count=repaired)
        return repaired

    def backfill_customer_ids(self, limit: int = 500) -> dict:
        """
        One-time repair for receipts created before customer linking existed.

        Fills customer_id from the session's first connected customer. Walk-in sessions
        (no connected customers) are left as null; receipts whose session is gone count
        as failed.
        """
        summary = {"updated": 0, "skipped": 0, "failed": 0}
        for receipt in self._store.receipts_missing_customer(limit):
            session = self._store.get_session(receipt.session_id) if receipt.session_id else None
            if session is None:
                summary["failed"] += 1
                json_log("warning", "receipt.backfill.session_missing", receipt_id=receipt.receipt_id)
                continue
            if not session.connected_customers:
                # Stamp it so the walk-in is not picked up again.
                self._store.set_receipt_customer(receipt.receipt_id, None, self._clock())
                summary["skipped"] += 1
                continue
            self._store.set_receipt_customer(receipt.receipt_id, session.connected_customers[0], self._clock())
            summary["updated"] += 1
        json_log("info", "receipt.backfill.done", **summary)
        return summary

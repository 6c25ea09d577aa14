import threading
from datetime import datetime, timezone
from typing import Optional

from bilee.app.errors import PersistenceError
from bilee.app.models import BillingSession, DailyAggregate, MerchantProfile, Receipt
from bilee.app.store import SessionStore


class InMemorySessionStore(SessionStore):
    """
    Thread-safe in-memory store.

    `calls` records every store method invoked, in order. Put a method name in `fail_on` to
    make it raise PersistenceError.
    """

    def __init__(self, clock=None):
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.sessions: dict[str, BillingSession] = {}
        self.archived: dict[str, BillingSession] = {}
        self.receipts: dict[str, Receipt] = {}
        self.merchants: dict[str, MerchantProfile] = {}
        self.aggregates: dict[tuple, DailyAggregate] = {}
        self.events: list[tuple[str, Optional[BillingSession], BillingSession]] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise PersistenceError("store_unavailable", f"{name} failed")

    # Sessions

    def get_session(self, session_id):
        self._enter("get_session")
        with self._lock:
            return self.sessions.get(session_id)

    def create_session(self, session):
        self._enter("create_session")
        with self._lock:
            self.sessions[session.id] = session
            self.events.append(("created", None, session))
            return session

    def update_session(self, session_id, fields, *, expected_status=None, expected_payment_status=None, emit=True):
        self._enter("update_session")
        with self._lock:
            before = self.sessions.get(session_id)
            if before is None:
                return None
            if expected_status is not None and before.status not in set(expected_status):
                return None
            if expected_payment_status is not None and before.payment_status not in set(expected_payment_status):
                return None
            after = before.model_copy(update={**fields, "updated_at": self._clock()})
            self.sessions[session_id] = after
            if emit:
                self.events.append(("updated", before, after))
            return before, after

    def find_sessions(self, status, expires_before, limit, *, unpaid_only=False):
        self._enter("find_sessions")
        with self._lock:
            found = [
                s
                for s in self.sessions.values()
                if s.status == status
                and s.expires_at is not None
                and s.expires_at < expires_before
                and not (unpaid_only and s.payment_status == "PAID")
            ]
        found.sort(key=lambda s: (s.expires_at, s.id))
        return found[:limit]

    def completed_sessions(self, merchant_id, start, end):
        self._enter("completed_sessions")
        with self._lock:
            found = [
                s
                for s in self.sessions.values()
                if s.merchant_id == merchant_id
                and s.status == "COMPLETED"
                and s.completed_at is not None
                and start <= s.completed_at < end
            ]
        found.sort(key=lambda s: (s.completed_at, s.id))
        return found

    def completed_merchant_ids(self, start, end):
        self._enter("completed_merchant_ids")
        with self._lock:
            return sorted(
                {
                    s.merchant_id
                    for s in self.sessions.values()
                    if s.status == "COMPLETED" and s.completed_at is not None and start <= s.completed_at < end
                }
            )

    def settled_sessions_without_receipt(self, updated_before, limit):
        self._enter("settled_sessions_without_receipt")
        with self._lock:
            found = [
                s
                for s in self.sessions.values()
                if s.payment_status == "PAID"
                and not s.receipt_generated
                and s.updated_at is not None
                and s.updated_at < updated_before
            ]
        return found[:limit]

    def expire_sessions(self, session_ids, now):
        self._enter("expire_sessions")
        count = 0
        with self._lock:
            for sid in session_ids:
                s = self.sessions.get(sid)
                if s is None or s.status != "ACTIVE" or s.payment_status == "PAID":
                    continue
                if s.expires_at is None or not s.expires_at < now:
                    continue
                self.sessions[sid] = s.model_copy(update={"status": "EXPIRED", "updated_at": now})
                count += 1
        return count

    def archive_sessions(self, session_ids, archived_at):
        self._enter("archive_sessions")
        count = 0
        with self._lock:
            for sid in session_ids:
                s = self.sessions.get(sid)
                if s is None or s.status != "EXPIRED":
                    continue
                self.archived[sid] = s.model_copy(update={"status": "ARCHIVED"})
                del self.sessions[sid]
                count += 1
        return count

    # Merchants

    def get_merchant(self, merchant_id):
        self._enter("get_merchant")
        return self.merchants.get(merchant_id)

    # Receipts

    def find_receipt_by_session(self, session_id):
        self._enter("find_receipt_by_session")
        with self._lock:
            return self.receipts.get(session_id)

    def insert_receipt_if_absent(self, receipt):
        self._enter("insert_receipt_if_absent")
        with self._lock:
            existing = self.receipts.get(receipt.session_id)
            if existing is not None:
                return False, existing
            self.receipts[receipt.session_id] = receipt
            return True, receipt

    def receipts_with_unmarked_sessions(self, limit):
        self._enter("receipts_with_unmarked_sessions")
        with self._lock:
            found = [
                r
                for r in self.receipts.values()
                if r.session_id in self.sessions and not self.sessions[r.session_id].receipt_generated
            ]
        return found[:limit]

    def receipts_missing_customer(self, limit):
        self._enter("receipts_missing_customer")
        with self._lock:
            found = [r for r in self.receipts.values() if r.customer_id is None and r.migrated_at is None]
        return found[:limit]

    def set_receipt_customer(self, receipt_id, customer_id, migrated_at):
        self._enter("set_receipt_customer")
        with self._lock:
            for session_id, r in self.receipts.items():
                if r.receipt_id == receipt_id:
                    self.receipts[session_id] = r.model_copy(
                        update={"customer_id": customer_id, "migrated_at": migrated_at}
                    )
                    return

    # Aggregates

    def save_daily_aggregate(self, aggregate):
        self._enter("save_daily_aggregate")
        with self._lock:
            self.aggregates[(aggregate.merchant_id, aggregate.date)] = aggregate

    def get_daily_aggregate(self, merchant_id, day):
        self._enter("get_daily_aggregate")
        with self._lock:
            return self.aggregates.get((merchant_id, day))


def make_session(session_id="s1", merchant_id="m1", **overrides) -> BillingSession:
    data = {
        "id": session_id,
        "merchant_id": merchant_id,
        "status": "ACTIVE",
        "payment_status": "PENDING",
        "total": "100.00",
        "subtotal": "100.00",
        "created_at": datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return BillingSession.model_validate(data)

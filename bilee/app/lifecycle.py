"""
Billing session lifecycle.

Status only moves forward:

    ACTIVE -> PAID -> COMPLETED -> ARCHIVED
    ACTIVE -> EXPIRED -> ARCHIVED

Events arrive at-least-once and in no guaranteed order (a "created as PAID" event and an
"updated to PAID" event for the same session may both be delivered, concurrently). The
receipt guard is what keeps settlement exactly-once; every status write here is
conditional on the current status, so a late or duplicate event can never move a session
backward.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from .logs import json_log
from .models import BillingSession
from .receipts import ReceiptGenerator, ReceiptResult
from .store import SessionStore

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "ACTIVE": frozenset({"PAID", "EXPIRED"}),
    "PAID": frozenset({"COMPLETED"}),
    "COMPLETED": frozenset({"ARCHIVED"}),
    "EXPIRED": frozenset({"ARCHIVED"}),
    "ARCHIVED": frozenset(),
}


def reachable_from(status: str) -> frozenset[str]:
    seen: set[str] = set()
    stack = list(ALLOWED_TRANSITIONS.get(status, ()))
    while stack:
        nxt = stack.pop()
        if nxt in seen:
            continue
        seen.add(nxt)
        stack.extend(ALLOWED_TRANSITIONS.get(nxt, ()))
    return frozenset(seen)


def is_forward(before: str, after: str) -> bool:
    return before == after or after in reachable_from(before)


@dataclass(frozen=True)
class SessionObserved:
    session: BillingSession
    is_newly_created: bool = True


@dataclass(frozen=True)
class SessionMutated:
    before: BillingSession
    after: BillingSession


SessionEvent = Union[SessionObserved, SessionMutated]


def just_confirmed(before: BillingSession, after: BillingSession) -> bool:
    return (not before.payment_confirmed and after.payment_confirmed) or (
        before.payment_status != "PAID" and after.payment_status == "PAID"
    )


class SessionEventDispatcher:
    """Fans a session event out to every registered handler, in registration order."""

    def __init__(self, handlers: Iterable[Callable[[SessionEvent], object]] = ()):
        self._handlers = list(handlers)

    def register(self, handler: Callable[[SessionEvent], object]) -> None:
        self._handlers.append(handler)

    def dispatch(self, event: SessionEvent) -> None:
        for handler in self._handlers:
            handler(event)


class SessionLifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        receipts: ReceiptGenerator,
        *,
        on_completed: Optional[Callable[[BillingSession], object]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._receipts = receipts
        self._on_completed = on_completed
        self._clock = clock

    def handle(self, event: SessionEvent) -> Optional[ReceiptResult]:
        if isinstance(event, SessionObserved):
            return self.on_observed(event)
        if isinstance(event, SessionMutated):
            return self.on_mutated(event)
        raise TypeError(f"unsupported session event: {type(event).__name__}")

    def on_observed(self, event: SessionObserved) -> Optional[ReceiptResult]:
        session = event.session
        if event.is_newly_created and session.payment_status == "PAID":
            # Instant walk-in checkout: the session was created already paid.
            return self.settle(session)
        return None

    def on_mutated(self, event: SessionMutated) -> Optional[ReceiptResult]:
        before, after = event.before, event.after
        if not is_forward(before.status, after.status):
            # Fail-open: drop the event, never crash the pipeline over it.
            json_log(
                "error",
                "session.transition.rejected",
                session_id=after.id,
                before_status=before.status,
                after_status=after.status,
            )
            return None
        if not just_confirmed(before, after):
            return None
        return self.settle(after)

    def transition(self, session_id: str, to_status: str, extra: Optional[dict] = None) -> Optional[BillingSession]:
        """Move a session forward one step; returns None if it is no longer in a predecessor state."""
        predecessors = [s for s, nxt in ALLOWED_TRANSITIONS.items() if to_status in nxt]
        res = self._store.update_session(
            session_id,
            {"status": to_status, **(extra or {})},
            expected_status=predecessors,
            emit=False,
        )
        return res[1] if res else None

    def settle(self, session: BillingSession) -> ReceiptResult:
        if session.status == "ACTIVE":
            # Another handler may have moved it already; the guarded write makes that harmless.
            self.transition(session.id, "PAID")
        elif session.status in {"EXPIRED", "ARCHIVED"}:
            json_log("warning", "session.settled_after_expiry", session_id=session.id, status=session.status)

        result = self._receipts.generate(session.id, session)
        if not result.has_receipt:
            if result.outcome == "failed":
                json_log("error", "session.settle.receipt_failed", session_id=session.id, reason=result.reason)
            return result

        completed = self.transition(session.id, "COMPLETED", {"completed_at": self._clock()})
        if completed is not None:
            json_log("info", "session.completed", session_id=session.id, receipt_id=result.receipt_id)
            if self._on_completed is not None:
                self._on_completed(completed)
        return result

    def resettle_stalled(self, updated_before: datetime, limit: int = 200) -> int:
        """Re-run settlement for paid sessions that never got a receipt (e.g. an earlier failed attempt)."""
        settled = 0
        for session in self._store.settled_sessions_without_receipt(updated_before, limit):
            if self.settle(session).has_receipt:
                settled += 1
        return settled

"""
PSP payment webhook verification.

This is the only place untrusted external input reaches the settlement pipeline, so every
check fails closed: a missing or bad signature, a malformed body, an unknown session or an
amount that does not reconcile is rejected with a typed error, never defaulted to success.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import AuthenticationError, NotFoundError, ReconciliationError, ValidationError
from .logs import json_log
from .models import BillingSession
from .payment_guards import assert_amount_reconciles, parse_amount
from .security import SignatureScheme
from .store import SessionStore
from .validation import WebhookStatus

SIGNATURE_HEADER = "X-Signature"
WEBHOOK_PAYMENT_METHOD = "upi"
_WEBHOOK_STATUS = TypeAdapter(WebhookStatus)


@dataclass(frozen=True)
class WebhookRequest:
    headers: Mapping[str, str]
    body: bytes

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for k, v in self.headers.items():
            if str(k).lower() == wanted:
                return v
        return None


@dataclass(frozen=True)
class VerifiedPayment:
    session_id: str
    transaction_id: str
    status: str
    amount: Optional[object]
    session: BillingSession
    duplicate: bool = False


def _required_str(payload: dict, key: str) -> str:
    raw = payload.get(key)
    if raw is None or isinstance(raw, (dict, list, bool)):
        raise ValidationError("missing_fields", f"{key} is required")
    val = str(raw).strip()
    if not val:
        raise ValidationError("missing_fields", f"{key} is required")
    return val


class WebhookVerifier:
    def __init__(
        self,
        store: SessionStore,
        scheme: SignatureScheme,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._scheme = scheme
        self._clock = clock

    def authenticate(self, request: WebhookRequest) -> None:
        signature = (request.header(SIGNATURE_HEADER) or "").strip()
        if not signature:
            raise AuthenticationError("missing_signature", "missing webhook signature")
        if not self._scheme.verify(request.body, signature):
            raise AuthenticationError("invalid_signature", "invalid webhook signature")

    def parse(self, request: WebhookRequest) -> dict:
        try:
            payload = json.loads((request.body or b"").decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as ex:
            raise ValidationError("malformed_payload", "webhook body is not valid JSON") from ex
        if not isinstance(payload, dict):
            raise ValidationError("malformed_payload", "webhook body must be a JSON object")
        return payload

    def _already_paid(self, session: BillingSession, transaction_id: str, status: str, amount) -> VerifiedPayment:
        if status == "SUCCESS":
            # PSPs redeliver; a repeat success for a settled session is acknowledged as-is.
            json_log("info", "webhook.duplicate_success", session_id=session.id, transaction_id=transaction_id)
            return VerifiedPayment(session.id, transaction_id, status, amount, session, duplicate=True)
        raise ReconciliationError("already_settled", "session payment is already settled")

    def verify(self, request: WebhookRequest) -> VerifiedPayment:
        # Signature first: nothing in an unauthenticated body is looked at.
        self.authenticate(request)
        payload = self.parse(request)

        session_id = _required_str(payload, "session_id")
        transaction_id = _required_str(payload, "transaction_id")
        raw_status = _required_str(payload, "status")
        try:
            status = _WEBHOOK_STATUS.validate_python(raw_status)
        except PydanticValidationError as ex:
            raise ValidationError("invalid_status", f"unsupported payment status: {raw_status}") from ex

        session = self._store.get_session(session_id)
        if session is None:
            raise NotFoundError("session_not_found", "session not found")

        amount = parse_amount(payload.get("amount"))
        assert_amount_reconciles(session.total, amount)

        if session.payment_status == "PAID":
            return self._already_paid(session, transaction_id, status, amount)

        paid = status == "SUCCESS"
        res = self._store.update_session(
            session_id,
            {
                "payment_status": "PAID" if paid else "FAILED",
                "payment_confirmed": paid,
                "payment_method": WEBHOOK_PAYMENT_METHOD,
                "transaction_id": transaction_id,
                "payment_time": self._clock(),
            },
            # A settled payment is never downgraded, even by a concurrent notification.
            expected_payment_status=["PENDING", "FAILED"],
        )
        if res is None:
            current = self._store.get_session(session_id)
            if current is None:
                raise NotFoundError("session_not_found", "session not found")
            return self._already_paid(current, transaction_id, status, amount)
        json_log(
            "info",
            "webhook.payment_recorded",
            session_id=session_id,
            transaction_id=transaction_id,
            status=status,
        )
        return VerifiedPayment(session_id, transaction_id, status, amount, res[1])

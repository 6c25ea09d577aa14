from dataclasses import dataclass
from typing import Optional

from .models import Receipt
from .store import SessionStore


@dataclass(frozen=True)
class Claim:
    created: bool
    receipt: Receipt


class IdempotencyGuard:
    """
    At-most-one receipt per session.

    `existing()` is the cheap early exit. `claim()` is the real guarantee: it delegates to
    the store's create-if-absent keyed by session id, so two handlers settling the same
    session concurrently cannot both create a receipt. The loser gets the winner's receipt.
    """

    def __init__(self, store: SessionStore):
        self._store = store

    def existing(self, session_id: str) -> Optional[Receipt]:
        return self._store.find_receipt_by_session(session_id)

    def claim(self, receipt: Receipt) -> Claim:
        created, stored = self._store.insert_receipt_if_absent(receipt)
        return Claim(created=created, receipt=stored)

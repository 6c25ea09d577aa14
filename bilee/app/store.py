"""
Session store.

`SessionStore` is the seam every settlement component is built against; handlers get
one injected instead of reaching for a process-wide client. `PgSessionStore` is the
production implementation on top of a psycopg connection pool.

All session writes are field-level (`UPDATE ... SET col = ...`), never whole-document
overwrites, so unrelated concurrent changes are not clobbered. Writes made on behalf of
clients (create, payment updates) append a row to the `session_events` outbox in the same
transaction; the worker delivers those rows to the lifecycle manager.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from functools import partial
from typing import Iterable, Optional

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .db import pooled_conn
from .errors import PersistenceError
from .models import BillingSession, DailyAggregate, MerchantProfile, Receipt

SESSION_COLUMNS = (
    "id",
    "merchant_id",
    "status",
    "payment_status",
    "payment_confirmed",
    "items",
    "subtotal",
    "tax",
    "total",
    "payment_method",
    "transaction_id",
    "payment_time",
    "connected_customers",
    "created_at",
    "expires_at",
    "completed_at",
    "updated_at",
    "receipt_generated",
    "receipt_id",
)

# Columns a field-level update may touch. `id`/`merchant_id`/`created_at` are immutable.
UPDATABLE_SESSION_COLUMNS = frozenset(SESSION_COLUMNS) - {"id", "merchant_id", "created_at", "updated_at"}

RECEIPT_COLUMNS = (
    "receipt_id",
    "session_id",
    "merchant_id",
    "merchant_name",
    "merchant_logo",
    "merchant_address",
    "merchant_phone",
    "merchant_tax_id",
    "merchant_category",
    "customer_id",
    "items",
    "subtotal",
    "tax",
    "total",
    "payment_method",
    "transaction_id",
    "payment_status",
    "payment_time",
    "is_verified",
    "created_at",
    "migrated_at",
)

_JSON_COLUMNS = {"items", "items_sold"}

_dumps = partial(json.dumps, default=str)


class SessionStore(ABC):
    """Persistence operations the settlement core relies on."""

    # Sessions

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[BillingSession]:
        pass

    @abstractmethod
    def create_session(self, session: BillingSession) -> BillingSession:
        """Insert a new session and emit a `created` event for it."""

    @abstractmethod
    def update_session(
        self,
        session_id: str,
        fields: dict,
        *,
        expected_status: Optional[Iterable[str]] = None,
        expected_payment_status: Optional[Iterable[str]] = None,
        emit: bool = True,
    ) -> Optional[tuple[BillingSession, BillingSession]]:
        """
        Apply a field-level update and return `(before, after)`.

        Returns None when the session does not exist or when a given `expected_status` /
        `expected_payment_status` does not match the current value (the guards that keep
        status and settlement monotonic under concurrent writers).
        """

    @abstractmethod
    def find_sessions(
        self, status: str, expires_before: datetime, limit: int, *, unpaid_only: bool = False
    ) -> list[BillingSession]:
        """Sessions in `status` with `expires_at < expires_before`; `unpaid_only` skips payment_status PAID."""

    @abstractmethod
    def completed_sessions(self, merchant_id: str, start: datetime, end: datetime) -> list[BillingSession]:
        """COMPLETED sessions with `start <= completed_at < end`, oldest first."""

    @abstractmethod
    def completed_merchant_ids(self, start: datetime, end: datetime) -> list[str]:
        pass

    @abstractmethod
    def settled_sessions_without_receipt(self, updated_before: datetime, limit: int) -> list[BillingSession]:
        pass

    @abstractmethod
    def expire_sessions(self, session_ids: list[str], now: datetime) -> int:
        """Mark the given ACTIVE, overdue sessions EXPIRED in one all-or-nothing batch."""

    @abstractmethod
    def archive_sessions(self, session_ids: list[str], archived_at: datetime) -> int:
        """Copy EXPIRED sessions into the archive, then delete them from the live store."""

    # Merchants

    @abstractmethod
    def get_merchant(self, merchant_id: str) -> Optional[MerchantProfile]:
        pass

    # Receipts

    @abstractmethod
    def find_receipt_by_session(self, session_id: str) -> Optional[Receipt]:
        pass

    @abstractmethod
    def insert_receipt_if_absent(self, receipt: Receipt) -> tuple[bool, Receipt]:
        """
        Atomically create `receipt` unless one already exists for its session.

        Returns `(True, receipt)` when this call created it, `(False, existing)` otherwise.
        """

    @abstractmethod
    def receipts_with_unmarked_sessions(self, limit: int) -> list[Receipt]:
        pass

    @abstractmethod
    def receipts_missing_customer(self, limit: int) -> list[Receipt]:
        pass

    @abstractmethod
    def set_receipt_customer(self, receipt_id: str, customer_id: Optional[str], migrated_at: datetime) -> None:
        pass

    # Aggregates

    @abstractmethod
    def save_daily_aggregate(self, aggregate: DailyAggregate) -> None:
        pass

    @abstractmethod
    def get_daily_aggregate(self, merchant_id: str, day: date) -> Optional[DailyAggregate]:
        pass


def _adapt(column: str, value):
    if column in _JSON_COLUMNS:
        return Jsonb(value, dumps=_dumps)
    return value


def _session_params(session: BillingSession) -> list:
    data = session.model_dump(mode="python")
    data["items"] = session.model_dump(mode="json")["items"]
    return [_adapt(c, data[c]) for c in SESSION_COLUMNS]


def _receipt_params(receipt: Receipt) -> list:
    data = receipt.model_dump(mode="python")
    data["items"] = receipt.model_dump(mode="json")["items"]
    return [_adapt(c, data[c]) for c in RECEIPT_COLUMNS]


def _row_to_session(row) -> BillingSession:
    data = dict(row)
    data["items"] = data.get("items") or []
    data["connected_customers"] = list(data.get("connected_customers") or [])
    return BillingSession.model_validate(data)


def _row_to_receipt(row) -> Receipt:
    data = dict(row)
    data["items"] = data.get("items") or []
    return Receipt.model_validate(data)


def _columns(names: Iterable[str]) -> sql.Composable:
    return sql.SQL(", ").join(sql.Identifier(n) for n in names)


class PgSessionStore(SessionStore):
    def __init__(self, pool: ConnectionPool):
        self._pool = pool

    @contextmanager
    def _cursor(self):
        # One transaction per call; psycopg errors (including pool timeouts) surface as
        # PersistenceError so callers never have to know about the driver.
        try:
            with pooled_conn(self._pool) as conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as ex:
            raise PersistenceError("store_unavailable", str(ex)) from ex

    def _append_event(self, cur, event_type: str, session_id: str, before, after) -> None:
        cur.execute(
            """
            INSERT INTO session_events (id, session_id, event_type, before_json, after_json)
            VALUES (gen_random_uuid(), %s, %s, %s, %s)
            """,
            (
                session_id,
                event_type,
                Jsonb(before.model_dump(mode="json"), dumps=_dumps) if before is not None else None,
                Jsonb(after.model_dump(mode="json"), dumps=_dumps),
            ),
        )

    def get_session(self, session_id: str) -> Optional[BillingSession]:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM billing_sessions WHERE id = %s").format(_columns(SESSION_COLUMNS)),
                (session_id,),
            )
            row = cur.fetchone()
            return _row_to_session(row) if row else None

    def create_session(self, session: BillingSession) -> BillingSession:
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    INSERT INTO billing_sessions ({cols})
                    VALUES ({vals})
                    RETURNING {cols}
                    """
                ).format(
                    cols=_columns(SESSION_COLUMNS),
                    vals=sql.SQL(", ").join(sql.Placeholder() * len(SESSION_COLUMNS)),
                ),
                _session_params(session),
            )
            created = _row_to_session(cur.fetchone())
            self._append_event(cur, "created", created.id, None, created)
            return created

    def update_session(self, session_id, fields, *, expected_status=None, expected_payment_status=None, emit=True):
        unknown = set(fields) - UPDATABLE_SESSION_COLUMNS
        if unknown:
            raise ValueError(f"cannot update session fields: {', '.join(sorted(unknown))}")
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM billing_sessions WHERE id = %s FOR UPDATE").format(
                    _columns(SESSION_COLUMNS)
                ),
                (session_id,),
            )
            row = cur.fetchone()
            if not row:
                return None
            before = _row_to_session(row)
            if expected_status is not None and before.status not in set(expected_status):
                return None
            if expected_payment_status is not None and before.payment_status not in set(expected_payment_status):
                return None

            names = sorted(fields)
            assignments = [sql.SQL("{} = %s").format(sql.Identifier(n)) for n in names]
            assignments.append(sql.SQL("updated_at = now()"))
            cur.execute(
                sql.SQL("UPDATE billing_sessions SET {} WHERE id = %s RETURNING {}").format(
                    sql.SQL(", ").join(assignments),
                    _columns(SESSION_COLUMNS),
                ),
                [_adapt(n, fields[n]) for n in names] + [session_id],
            )
            after = _row_to_session(cur.fetchone())
            if emit:
                self._append_event(cur, "updated", session_id, before, after)
            return before, after

    def find_sessions(self, status, expires_before, limit, *, unpaid_only=False):
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM billing_sessions
                    WHERE status = %s AND expires_at < %s
                      AND (%s = false OR payment_status <> 'PAID')
                    ORDER BY expires_at ASC, id ASC
                    LIMIT %s
                    """
                ).format(_columns(SESSION_COLUMNS)),
                (status, expires_before, bool(unpaid_only), limit),
            )
            return [_row_to_session(r) for r in cur.fetchall()]

    def completed_sessions(self, merchant_id, start, end):
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM billing_sessions
                    WHERE merchant_id = %s
                      AND status = 'COMPLETED'
                      AND completed_at >= %s
                      AND completed_at < %s
                    ORDER BY completed_at ASC, id ASC
                    """
                ).format(_columns(SESSION_COLUMNS)),
                (merchant_id, start, end),
            )
            return [_row_to_session(r) for r in cur.fetchall()]

    def completed_merchant_ids(self, start, end):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT merchant_id
                FROM billing_sessions
                WHERE status = 'COMPLETED' AND completed_at >= %s AND completed_at < %s
                ORDER BY merchant_id
                """,
                (start, end),
            )
            return [str(r["merchant_id"]) for r in cur.fetchall()]

    def settled_sessions_without_receipt(self, updated_before, limit):
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM billing_sessions
                    WHERE payment_status = 'PAID'
                      AND receipt_generated = false
                      AND updated_at < %s
                    ORDER BY updated_at ASC, id ASC
                    LIMIT %s
                    """
                ).format(_columns(SESSION_COLUMNS)),
                (updated_before, limit),
            )
            return [_row_to_session(r) for r in cur.fetchall()]

    def expire_sessions(self, session_ids, now):
        if not session_ids:
            return 0
        with self._cursor() as cur:
            # A paid session is still ACTIVE until its settlement event is delivered; it never expires.
            cur.execute(
                """
                UPDATE billing_sessions
                SET status = 'EXPIRED', updated_at = %s
                WHERE id = ANY(%s) AND status = 'ACTIVE' AND payment_status <> 'PAID' AND expires_at < %s
                """,
                (now, list(session_ids), now),
            )
            return cur.rowcount

    def archive_sessions(self, session_ids, archived_at):
        if not session_ids:
            return 0
        copy_cols = [c for c in SESSION_COLUMNS if c != "status"]
        with self._cursor() as cur:
            # Copy first, delete second: a crash in between leaves a re-deletable duplicate.
            cur.execute(
                sql.SQL(
                    """
                    INSERT INTO archived_sessions ({cols}, status, archived_at)
                    SELECT {cols}, 'ARCHIVED', %s
                    FROM billing_sessions
                    WHERE id = ANY(%s) AND status = 'EXPIRED'
                    ON CONFLICT (id) DO UPDATE SET archived_at = EXCLUDED.archived_at
                    """
                ).format(cols=_columns(copy_cols)),
                (archived_at, list(session_ids)),
            )
            cur.execute(
                """
                DELETE FROM billing_sessions
                WHERE id = ANY(%s) AND status = 'EXPIRED'
                  AND id IN (SELECT id FROM archived_sessions WHERE id = ANY(%s))
                """,
                (list(session_ids), list(session_ids)),
            )
            return cur.rowcount

    def get_merchant(self, merchant_id):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, business_name, logo_url, address, phone, tax_id, category, timezone
                FROM merchants
                WHERE id = %s
                """,
                (merchant_id,),
            )
            row = cur.fetchone()
            return MerchantProfile.model_validate(dict(row)) if row else None

    def find_receipt_by_session(self, session_id):
        with self._cursor() as cur:
            cur.execute(
                sql.SQL("SELECT {} FROM receipts WHERE session_id = %s LIMIT 1").format(
                    _columns(RECEIPT_COLUMNS)
                ),
                (session_id,),
            )
            row = cur.fetchone()
            return _row_to_receipt(row) if row else None

    def insert_receipt_if_absent(self, receipt):
        with self._cursor() as cur:
            # The unique constraint on session_id makes check-and-create a single atomic step.
            cur.execute(
                sql.SQL(
                    """
                    INSERT INTO receipts ({cols})
                    VALUES ({vals})
                    ON CONFLICT (session_id) DO NOTHING
                    RETURNING {cols}
                    """
                ).format(
                    cols=_columns(RECEIPT_COLUMNS),
                    vals=sql.SQL(", ").join(sql.Placeholder() * len(RECEIPT_COLUMNS)),
                ),
                _receipt_params(receipt),
            )
            row = cur.fetchone()
            if row:
                return True, _row_to_receipt(row)
            cur.execute(
                sql.SQL("SELECT {} FROM receipts WHERE session_id = %s").format(_columns(RECEIPT_COLUMNS)),
                (receipt.session_id,),
            )
            return False, _row_to_receipt(cur.fetchone())

    def receipts_with_unmarked_sessions(self, limit):
        cols = sql.SQL(", ").join(sql.Identifier("r", c) for c in RECEIPT_COLUMNS)
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM receipts r
                    JOIN billing_sessions s ON s.id = r.session_id
                    WHERE s.receipt_generated = false
                    ORDER BY r.created_at ASC
                    LIMIT %s
                    """
                ).format(cols),
                (limit,),
            )
            return [_row_to_receipt(r) for r in cur.fetchall()]

    def receipts_missing_customer(self, limit):
        with self._cursor() as cur:
            cur.execute(
                sql.SQL(
                    """
                    SELECT {}
                    FROM receipts
                    WHERE customer_id IS NULL AND migrated_at IS NULL
                    ORDER BY created_at ASC
                    LIMIT %s
                    """
                ).format(_columns(RECEIPT_COLUMNS)),
                (limit,),
            )
            return [_row_to_receipt(r) for r in cur.fetchall()]

    def set_receipt_customer(self, receipt_id, customer_id, migrated_at):
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE receipts
                SET customer_id = %s, migrated_at = %s
                WHERE receipt_id = %s
                """,
                (customer_id, migrated_at, receipt_id),
            )

    def save_daily_aggregate(self, aggregate):
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO daily_aggregates (merchant_id, date, total, orders_count, items_sold, updated_at)
                VALUES (%s, %s, %s, %s, %s, now())
                ON CONFLICT (merchant_id, date)
                DO UPDATE SET total = EXCLUDED.total,
                              orders_count = EXCLUDED.orders_count,
                              items_sold = EXCLUDED.items_sold,
                              updated_at = now()
                """,
                (
                    aggregate.merchant_id,
                    aggregate.date,
                    aggregate.total,
                    aggregate.orders_count,
                    _adapt("items_sold", aggregate.model_dump(mode="json")["items_sold"]),
                ),
            )

    def get_daily_aggregate(self, merchant_id, day):
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT merchant_id, date, total, orders_count, items_sold
                FROM daily_aggregates
                WHERE merchant_id = %s AND date = %s
                """,
                (merchant_id, day),
            )
            row = cur.fetchone()
            if not row:
                return None
            data = dict(row)
            data["items_sold"] = data.get("items_sold") or []
            return DailyAggregate.model_validate(data)

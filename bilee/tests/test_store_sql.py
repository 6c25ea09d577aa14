from datetime import datetime, timezone

import psycopg
import pytest

from bilee.app.errors import PersistenceError
from bilee.app.models import Receipt
from bilee.app.store import PgSessionStore


def _render(query) -> str:
    # Composed queries render without a connection; identifiers come out double-quoted.
    return query if isinstance(query, str) else query.as_string(None)


class _DummyCursor:
    def __init__(self, rows=None, error=None):
        self._rows = list(rows or [])
        self._error = error
        self.executed: list[tuple[str, tuple]] = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        if self._error is not None:
            raise self._error
        text = _render(query)
        self.executed.append((" ".join(text.split()), tuple(params or ())))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


class _DummyPool:
    def __init__(self, cursor):
        self._cursor = cursor

    def connection(self):
        return _DummyConn(self._cursor)


def _store(rows=None, error=None):
    cur = _DummyCursor(rows, error)
    return PgSessionStore(_DummyPool(cur)), cur


def _session_row(**overrides):
    row = {
        "id": "s1",
        "merchant_id": "m1",
        "status": "ACTIVE",
        "payment_status": "PENDING",
        "payment_confirmed": False,
        "items": [],
        "subtotal": 100,
        "tax": 0,
        "total": 100,
        "connected_customers": None,
        "receipt_generated": False,
    }
    row.update(overrides)
    return row


def _receipt(**overrides):
    data = {"receipt_id": "rcpt_1_aaaa", "session_id": "s1", "merchant_id": "m1", "total": 100}
    data.update(overrides)
    return Receipt.model_validate(data)


def test_insert_receipt_if_absent_created():
    store, cur = _store(rows=[_receipt().model_dump()])

    created, receipt = store.insert_receipt_if_absent(_receipt())

    assert created is True
    assert receipt.receipt_id == "rcpt_1_aaaa"
    assert len(cur.executed) == 1
    assert "ON CONFLICT (session_id) DO NOTHING" in cur.executed[0][0]


def test_insert_receipt_if_absent_returns_existing_on_conflict():
    store, cur = _store(rows=[None, _receipt(receipt_id="rcpt_0_winner").model_dump()])

    created, receipt = store.insert_receipt_if_absent(_receipt())

    assert created is False
    assert receipt.receipt_id == "rcpt_0_winner"
    assert cur.executed[1][1] == ("s1",)


def test_update_session_applies_fields_and_appends_event():
    store, cur = _store(rows=[_session_row(), _session_row(payment_status="PAID", payment_confirmed=True)])

    before, after = store.update_session("s1", {"payment_status": "PAID", "payment_confirmed": True})

    assert before.payment_status == "PENDING"
    assert after.payment_status == "PAID"
    assert "FOR UPDATE" in cur.executed[0][0]
    update_sql, update_params = cur.executed[1]
    assert update_sql.startswith('UPDATE billing_sessions SET "payment_confirmed" = %s, "payment_status" = %s')
    assert update_params == (True, "PAID", "s1")
    assert "INSERT INTO session_events" in cur.executed[2][0]
    assert cur.executed[2][1][:2] == ("s1", "updated")


def test_internal_update_does_not_append_event():
    store, cur = _store(rows=[_session_row(status="PAID"), _session_row(status="COMPLETED")])

    store.update_session("s1", {"status": "COMPLETED"}, expected_status=["PAID"], emit=False)

    assert len(cur.executed) == 2
    assert not any("session_events" in q for q, _ in cur.executed)


def test_update_session_guard_mismatch_writes_nothing():
    store, cur = _store(rows=[_session_row(payment_status="PAID")])

    res = store.update_session("s1", {"payment_status": "FAILED"}, expected_payment_status=["PENDING", "FAILED"])

    assert res is None
    assert len(cur.executed) == 1


def test_update_session_missing_returns_none():
    store, cur = _store(rows=[None])
    assert store.update_session("nope", {"status": "PAID"}) is None


def test_update_session_rejects_immutable_fields():
    store, cur = _store()
    with pytest.raises(ValueError):
        store.update_session("s1", {"merchant_id": "m2"})
    assert cur.executed == []


def test_create_session_appends_created_event():
    from bilee.tests.fakes import make_session

    store, cur = _store(rows=[_session_row()])

    created = store.create_session(make_session())

    assert created.id == "s1"
    assert cur.executed[0][0].startswith("INSERT INTO billing_sessions")
    assert cur.executed[1][1][:2] == ("s1", "created")
    assert cur.executed[1][1][2] is None


def test_expire_sessions_is_guarded_on_status():
    store, cur = _store()
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    assert store.expire_sessions([], now) == 0
    assert cur.executed == []

    store.expire_sessions(["a", "b"], now)
    q, params = cur.executed[0]
    assert "status = 'ACTIVE'" in q
    assert "payment_status <> 'PAID'" in q
    assert params == (now, ["a", "b"], now)


def test_archive_copies_before_deleting():
    store, cur = _store()

    store.archive_sessions(["a"], datetime(2026, 1, 1, tzinfo=timezone.utc))

    assert cur.executed[0][0].startswith("INSERT INTO archived_sessions")
    assert cur.executed[1][0].startswith("DELETE FROM billing_sessions")


def test_driver_errors_surface_as_persistence_error():
    store, _ = _store(error=psycopg.OperationalError("connection refused"))

    with pytest.raises(PersistenceError) as exc_info:
        store.get_session("s1")

    assert exc_info.value.reason == "store_unavailable"
    assert exc_info.value.status_code == 503


def test_find_sessions_can_skip_paid_sessions():
    store, cur = _store()
    cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)

    store.find_sessions("ACTIVE", cutoff, 50, unpaid_only=True)
    store.find_sessions("EXPIRED", cutoff, 50)

    assert "payment_status <> 'PAID'" in cur.executed[0][0]
    assert cur.executed[0][1] == ("ACTIVE", cutoff, True, 50)
    assert cur.executed[1][1] == ("EXPIRED", cutoff, False, 50)

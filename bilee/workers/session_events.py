#!/usr/bin/env python3
"""
Session event outbox processor.

Every client-facing session write appends a row to `session_events` in the same
transaction. This worker claims those rows (`FOR UPDATE SKIP LOCKED`, so several
processes can run side by side) and delivers them to the lifecycle manager as
`SessionObserved` / `SessionMutated`. Delivery is at-least-once and not ordered across
workers; handlers are idempotent. Failed deliveries back off exponentially and go `dead`
after `max_attempts`.
"""

import argparse
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from psycopg_pool import ConnectionPool

from ..app.config import Settings
from ..app.db import create_pool, pooled_conn
from ..app.lifecycle import SessionEvent, SessionEventDispatcher, SessionMutated, SessionObserved
from ..app.logs import json_log
from ..app.models import BillingSession
from ..app.pipeline import build_pipeline
from ..app.store import PgSessionStore

MAX_ATTEMPTS_DEFAULT = 5


def next_retry_at_for_attempt(attempt_count: int, event_id: Optional[str] = None) -> datetime:
    delay_seconds = min(300, 2 ** max(attempt_count - 1, 0))
    if event_id:
        # Deterministic per-event jitter to reduce synchronized retry storms.
        digest = hashlib.sha1(f"{event_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(300, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)


def _load(raw):
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    return BillingSession.model_validate(raw)


def event_from_row(row) -> SessionEvent:
    event_type = row["event_type"]
    after = _load(row["after_json"])
    if event_type == "created":
        return SessionObserved(session=after, is_newly_created=True)
    if event_type == "updated":
        before = _load(row["before_json"])
        if before is None:
            raise ValueError(f"updated event {row['id']} has no before snapshot")
        return SessionMutated(before=before, after=after)
    raise ValueError(f"Unsupported session event type {event_type}")


def _fetch_next_event(cur, max_attempts: int):
    cur.execute(
        """
        SELECT id, session_id, event_type, before_json, after_json, attempt_count
        FROM session_events
        WHERE (
            status = 'pending'
            OR (
                status = 'failed'
                AND (next_attempt_at IS NULL OR next_attempt_at <= now())
            )
          )
          AND attempt_count < %s
        ORDER BY
          CASE WHEN status = 'pending' THEN 0 ELSE 1 END,
          COALESCE(next_attempt_at, created_at) ASC,
          created_at ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
        """,
        (max_attempts,),
    )
    return cur.fetchone()


def _process_one(pool: ConnectionPool, dispatcher: SessionEventDispatcher, max_attempts: int) -> bool:
    with pooled_conn(pool) as conn:
        with conn.cursor() as cur:
            e = _fetch_next_event(cur, max_attempts)
            if not e:
                return False

            process_error = None
            try:
                dispatcher.dispatch(event_from_row(e))
            except Exception as ex:
                process_error = ex

            if process_error is None:
                cur.execute(
                    """
                    UPDATE session_events
                    SET status = 'processed',
                        processed_at = now(),
                        error_message = NULL,
                        next_attempt_at = NULL
                    WHERE id = %s
                    """,
                    (e["id"],),
                )
                return True

            next_attempt = int(e.get("attempt_count") or 0) + 1
            next_status = "dead" if next_attempt >= max_attempts else "failed"
            json_log(
                "error",
                "session_events.delivery_failed",
                event_id=str(e["id"]),
                session_id=e["session_id"],
                attempt=next_attempt,
                status=next_status,
                error=str(process_error),
            )
            cur.execute(
                """
                UPDATE session_events
                SET status = %s,
                    attempt_count = %s,
                    error_message = %s,
                    next_attempt_at = %s
                WHERE id = %s
                """,
                (
                    next_status,
                    next_attempt,
                    str(process_error),
                    (next_retry_at_for_attempt(next_attempt, str(e["id"])) if next_status == "failed" else None),
                    e["id"],
                ),
            )
    return True


def process_events(
    pool: ConnectionPool,
    dispatcher: SessionEventDispatcher,
    limit: int,
    max_attempts: int = MAX_ATTEMPTS_DEFAULT,
) -> int:
    processed = 0
    while processed < limit:
        did_one = _process_one(pool, dispatcher, max_attempts)
        if not did_one:
            break
        processed += 1
    return processed


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=None, help="Overrides DATABASE_URL")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=1.0, help="Seconds to sleep between loops")
    args = parser.parse_args()

    cfg = Settings()
    if args.db:
        cfg.db_url = args.db
    pool = create_pool(cfg)
    pipeline = build_pipeline(PgSessionStore(pool), cfg)
    try:
        if args.loop:
            import time
            while True:
                process_events(pool, pipeline.dispatcher, args.limit, max_attempts=args.max_attempts)
                time.sleep(args.sleep)
        else:
            process_events(pool, pipeline.dispatcher, args.limit, max_attempts=args.max_attempts)
    finally:
        pool.close()


if __name__ == "__main__":
    main()

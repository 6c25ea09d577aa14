#!/usr/bin/env python3
"""
Long-running worker service.

Delivers session events from the outbox (see `session_events.py`) and runs the
scheduled settlement jobs from a DB-backed schedule (`background_job_schedules`):
session expiry, archival, daily aggregates and receipt recovery.
"""

import argparse
import json
import time
import sys
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

from ..app.config import Settings
from ..app.db import create_pool, pooled_conn
from ..app.logs import json_log
from ..app.pipeline import Pipeline, build_pipeline
from ..app.store import PgSessionStore
from .session_events import MAX_ATTEMPTS_DEFAULT, process_events


def default_job_specs(cfg: Settings) -> dict[str, dict[str, Any]]:
    return {
        # Hourly or daily depending on deployment (EXPIRY_SWEEP_INTERVAL_SECONDS).
        "SESSION_EXPIRY": {"interval_seconds": cfg.expiry_sweep_interval_seconds, "options_json": {}},
        "SESSION_ARCHIVE": {"interval_seconds": 86400, "options_json": {}},
        "DAILY_AGGREGATES": {"interval_seconds": 3600, "options_json": {"lookback_days": 1}},
        "RECEIPT_RECOVERY": {"interval_seconds": 900, "options_json": {"limit": 200, "stale_minutes": 10}},
    }


WORKER_NAME = "settlement-worker"


def record_worker_heartbeat(conn, details: dict, worker_name=None):
    # Persist a heartbeat so operators can see "worker alive" without log access.
    name = str(worker_name or WORKER_NAME).strip() or WORKER_NAME
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO worker_heartbeats (worker_name, last_seen_at, details)
            VALUES (%s, now(), %s::jsonb)
            ON CONFLICT (worker_name)
            DO UPDATE SET last_seen_at = now(), details = EXCLUDED.details
            """,
            (name, json.dumps(details or {}, default=str)),
        )


def ensure_default_job_schedules(conn, cfg: Settings):
    with conn.cursor() as cur:
        for job_code, spec in default_job_specs(cfg).items():
            cur.execute(
                """
                INSERT INTO background_job_schedules
                  (job_code, enabled, interval_seconds, options_json, next_run_at)
                VALUES
                  (%s, true, %s, %s::jsonb, now())
                ON CONFLICT (job_code) DO NOTHING
                """,
                (job_code, spec["interval_seconds"], json.dumps(spec["options_json"])),
            )


def claim_due_job(conn):
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH due AS (
              SELECT job_code
              FROM background_job_schedules
              WHERE enabled = true
                AND (next_run_at IS NULL OR next_run_at <= now())
              ORDER BY next_run_at NULLS FIRST, job_code
              FOR UPDATE SKIP LOCKED
              LIMIT 1
            )
            UPDATE background_job_schedules s
            SET last_run_at = now(),
                next_run_at = now() + interval '1 second' * s.interval_seconds,
                updated_at = now()
            FROM due
            WHERE s.job_code = due.job_code
            RETURNING s.job_code, s.options_json
            """
        )
        return cur.fetchone()


def record_job_run_start(conn, job_code: str, details: dict):
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO background_job_runs
              (id, job_code, status, started_at, details_json)
            VALUES
              (gen_random_uuid(), %s, 'running', now(), %s::jsonb)
            RETURNING id
            """,
            (job_code, json.dumps(details, default=str)),
        )
        return cur.fetchone()["id"]


def record_job_run_finish(conn, run_id: str, status: str, error_message: str | None = None, result=None):
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE background_job_runs
            SET status = %s,
                finished_at = now(),
                error_message = %s,
                details_json = details_json || %s::jsonb
            WHERE id = %s
            """,
            (status, error_message, json.dumps({"result": result}, default=str), run_id),
        )


def execute_job(pipeline: Pipeline, job_code: str, options: dict, now: datetime | None = None):
    now = now or datetime.now(timezone.utc)
    if job_code == "SESSION_EXPIRY":
        return {"expired": pipeline.sweeper.expire_overdue(now)}
    if job_code == "SESSION_ARCHIVE":
        return {"archived": pipeline.sweeper.archive_stale(now)}
    if job_code == "DAILY_AGGREGATES":
        lookback_days = int(options.get("lookback_days") or 1)
        lookback_days = max(0, min(lookback_days, 31))
        return {"recomputed": pipeline.aggregates.recompute_recent(now, lookback_days=lookback_days)}
    if job_code == "RECEIPT_RECOVERY":
        limit = int(options.get("limit") or 200)
        stale_minutes = int(options.get("stale_minutes") or 10)
        repaired = pipeline.receipts.repair_unmarked_sessions(limit=limit)
        resettled = pipeline.lifecycle.resettle_stalled(now - timedelta(minutes=stale_minutes), limit=limit)
        return {"sessions_marked": repaired, "resettled": resettled}
    raise ValueError(f"unknown job_code: {job_code}")


def run_due_jobs(pool, pipeline: Pipeline, max_jobs: int = 3) -> int:
    ran = 0
    with pooled_conn(pool) as conn:
        with conn.transaction():
            ensure_default_job_schedules(conn, pipeline.cfg)

        for _ in range(max_jobs):
            with conn.transaction():
                claimed = claim_due_job(conn)
                if not claimed:
                    break
                job_code = claimed["job_code"]
                options = claimed.get("options_json") or {}
                if isinstance(options, str):
                    options = json.loads(options)
                run_id = record_job_run_start(conn, job_code, {"options": options})

            try:
                result = execute_job(pipeline, job_code, options)
                with conn.transaction():
                    record_job_run_finish(conn, run_id, "success", result=result)
                json_log("info", "worker.job.success", job_code=job_code, result=result)
            except Exception as ex:
                # A failed run is recorded and picked up again at its next interval.
                json_log("error", "worker.job.failed", job_code=job_code, error=str(ex))
                with conn.transaction():
                    record_job_run_finish(conn, run_id, "failed", error_message=str(ex))
            ran += 1
    return ran


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=None, help="Overrides DATABASE_URL")
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    cfg = Settings()
    if args.db:
        cfg.db_url = args.db
    pool = create_pool(cfg)
    pipeline = build_pipeline(PgSessionStore(pool), cfg)

    try:
        while True:
            did_work = False
            processed = 0
            jobs_ran = 0
            events_error = None
            jobs_error = None
            try:
                processed = process_events(pool, pipeline.dispatcher, args.limit, max_attempts=args.max_attempts)
                if processed:
                    did_work = True
            except Exception as ex:
                # Never crash the worker loop due to outbox processing errors.
                json_log("error", "worker.events.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
                events_error = str(ex)

            try:
                jobs_ran = run_due_jobs(pool, pipeline, max_jobs=3)
                if jobs_ran:
                    did_work = True
            except Exception as ex:
                # Never crash the worker loop due to background scheduling issues.
                json_log("error", "worker.jobs.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
                jobs_error = str(ex)

            try:
                with pooled_conn(pool) as conn:
                    record_worker_heartbeat(
                        conn,
                        {
                            "processed": processed,
                            "jobs_ran": jobs_ran,
                            "events_error": events_error,
                            "jobs_error": jobs_error,
                        },
                    )
            except Exception as ex:
                json_log("error", "worker.heartbeat.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)

            if args.once:
                break

            # If we processed anything, loop again quickly; otherwise back off.
            time.sleep(0 if did_work else args.sleep)
    finally:
        pool.close()


if __name__ == "__main__":
    main()

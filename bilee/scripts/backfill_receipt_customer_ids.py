#!/usr/bin/env python3
import argparse
import os
import sys

from bilee.app.config import Settings
from bilee.app.db import create_pool
from bilee.app.receipts import ReceiptGenerator
from bilee.app.store import PgSessionStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Link receipts created before customer linking to their customer.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/bilee",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--limit", type=int, default=500, help="Receipts per batch")
    parser.add_argument("--all", action="store_true", help="Keep running batches until nothing is left to link")
    args = parser.parse_args()

    if args.limit <= 0:
        print("--limit must be positive", file=sys.stderr)
        return 2

    cfg = Settings()
    cfg.db_url = args.db
    pool = create_pool(cfg)
    totals = {"updated": 0, "skipped": 0, "failed": 0}
    try:
        generator = ReceiptGenerator(PgSessionStore(pool))
        while True:
            summary = generator.backfill_customer_ids(limit=args.limit)
            for k in totals:
                totals[k] += summary[k]
            # Failed receipts stay unstamped, so a batch of only failures means we are done.
            if not args.all or (summary["updated"] + summary["skipped"]) == 0:
                break
    finally:
        pool.close()

    print(f"updated={totals['updated']} skipped={totals['skipped']} failed={totals['failed']}")
    return 1 if totals["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())

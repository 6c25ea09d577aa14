from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .logs import json_log
from .store import SessionStore

# Platform batch-write limit; a larger backlog is left for the next scheduled run.
MAX_BATCH = 500


class RetentionSweeper:
    def __init__(
        self,
        store: SessionStore,
        *,
        retention_days: int = 30,
        batch_limit: int = MAX_BATCH,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._retention = timedelta(days=max(1, int(retention_days)))
        self._batch_limit = max(1, min(int(batch_limit), MAX_BATCH))
        self._clock = clock

    def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Unpaid ACTIVE sessions past `expires_at` become EXPIRED. One batch per run."""
        now = now or self._clock()
        candidates = self._store.find_sessions("ACTIVE", now, self._batch_limit, unpaid_only=True)
        if not candidates:
            return 0
        count = self._store.expire_sessions([s.id for s in candidates], now)
        json_log("info", "sweep.expired", count=count, candidates=len(candidates))
        return count

    def archive_stale(self, now: Optional[datetime] = None) -> int:
        """EXPIRED sessions older than the retention window move to the archive. One batch per run."""
        now = now or self._clock()
        cutoff = now - self._retention
        candidates = self._store.find_sessions("EXPIRED", cutoff, self._batch_limit)
        if not candidates:
            return 0
        count = self._store.archive_sessions([s.id for s in candidates], now)
        json_log("info", "sweep.archived", count=count, cutoff=cutoff.isoformat())
        return count

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .logs import json_log
from .models import BillingSession, DailyAggregate, ItemSold
from .store import SessionStore


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[local midnight, next local midnight) for `day`, as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def summarize(merchant_id: str, day: date, sessions: list[BillingSession]) -> DailyAggregate:
    total = Decimal("0")
    by_name: dict[str, dict] = {}
    for s in sessions:
        total += s.total
        for item in s.items:
            row = by_name.setdefault(item.name, {"qty": Decimal("0"), "revenue": Decimal("0")})
            row["qty"] += item.qty
            row["revenue"] += item.revenue()
    items_sold = [
        ItemSold(name=name, qty=row["qty"], revenue=row["revenue"])
        for name, row in sorted(by_name.items())
    ]
    return DailyAggregate(
        merchant_id=merchant_id,
        date=day,
        total=total,
        orders_count=len(sessions),
        items_sold=items_sold,
    )


class AggregationEngine:
    """
    Per-merchant, per-day revenue rollup.

    Always a full recompute from the COMPLETED sessions of that day, written over whatever
    was stored before. Running it twice gives the same row; running it after a correction
    gives the corrected row.
    """

    def __init__(self, store: SessionStore, default_timezone: str = "Asia/Kolkata"):
        self._store = store
        self._default_tz = ZoneInfo(default_timezone)

    def merchant_timezone(self, merchant_id: str) -> ZoneInfo:
        merchant = self._store.get_merchant(merchant_id)
        name = (merchant.timezone or "").strip() if merchant else ""
        if not name:
            return self._default_tz
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            json_log("warning", "aggregate.unknown_timezone", merchant_id=merchant_id, timezone=name)
            return self._default_tz

    def recompute(self, merchant_id: str, day: date) -> DailyAggregate:
        start, end = day_bounds(day, self.merchant_timezone(merchant_id))
        sessions = self._store.completed_sessions(merchant_id, start, end)
        aggregate = summarize(merchant_id, day, sessions)
        self._store.save_daily_aggregate(aggregate)
        json_log(
            "info",
            "aggregate.recomputed",
            merchant_id=merchant_id,
            date=day.isoformat(),
            orders_count=aggregate.orders_count,
            total=aggregate.total,
        )
        return aggregate

    def get(self, merchant_id: str, day: date) -> Optional[DailyAggregate]:
        return self._store.get_daily_aggregate(merchant_id, day)

    def recompute_for_session(self, session: BillingSession) -> Optional[DailyAggregate]:
        """Eager path: refresh the aggregate of the day a session completed on."""
        if session.status != "COMPLETED" or session.completed_at is None:
            return None
        tz = self.merchant_timezone(session.merchant_id)
        completed_at = session.completed_at
        if completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=timezone.utc)
        return self.recompute(session.merchant_id, completed_at.astimezone(tz).date())

    def recompute_recent(self, now: datetime, lookback_days: int = 1) -> int:
        """Scheduled path: recompute today and the previous `lookback_days` for every merchant with sales."""
        now_utc = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
        # Widen the window by a day on each side so merchants in any timezone are covered.
        window_start = now_utc - timedelta(days=lookback_days + 1)
        window_end = now_utc + timedelta(days=1)
        done = 0
        for merchant_id in self._store.completed_merchant_ids(window_start, window_end):
            local_today = now_utc.astimezone(self.merchant_timezone(merchant_id)).date()
            for offset in range(lookback_days, -1, -1):
                self.recompute(merchant_id, local_today - timedelta(days=offset))
                done += 1
        return done

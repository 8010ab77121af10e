"""
Realtime counters and period rollups.

Every accepted page view bumps a per-minute counter (short TTL) and three
rollups: hour, day and month. Rollup counters are plain numbers; uniques
are deduplicated with per-bucket marker items that expire once the bucket
has closed. Queries read the
rollups for the chosen period and zero-fill buckets that have no item.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .config import DAY_SECONDS, Settings
from .errors import StorageError
from .models import Aggregate, Period, iso_timestamp
from .storage import AnalyticsStore

logger = logging.getLogger(__name__)

# Markers must outlive the longest bucket of their period
_MARKER_TTLS = {
    Period.HOUR: DAY_SECONDS,
    Period.DAY: 2 * DAY_SECONDS,
    Period.MONTH: 32 * DAY_SECONDS,
}

_BUCKET_FORMATS = {
    Period.HOUR: "%Y-%m-%dT%H",
    Period.DAY: "%Y-%m-%d",
    Period.MONTH: "%Y-%m",
}


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minute_key(dt: datetime) -> str:
    return _utc(dt).strftime("%Y-%m-%dT%H:%M")


def bucket_key(dt: datetime, period: Period) -> str:
    """ISO-truncated bucket: hour "2024-01-15T12", day "2024-01-15", month "2024-01"."""
    return _utc(dt).strftime(_BUCKET_FORMATS[period])


def truncate(dt: datetime, period: Period) -> datetime:
    dt = _utc(dt)
    if period == Period.HOUR:
        return dt.replace(minute=0, second=0, microsecond=0)
    if period == Period.DAY:
        return dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_bucket(dt: datetime, period: Period) -> datetime:
    if period == Period.HOUR:
        return dt + timedelta(hours=1)
    if period == Period.DAY:
        return dt + timedelta(days=1)
    if dt.month == 12:
        return dt.replace(year=dt.year + 1, month=1)
    return dt.replace(month=dt.month + 1)


def determine_period(start: datetime, end: datetime) -> Period:
    """Hourly up to 2 days, daily up to 90 days, monthly beyond."""
    days = (end - start).total_seconds() / DAY_SECONDS
    if days <= 2:
        return Period.HOUR
    if days <= 90:
        return Period.DAY
    return Period.MONTH


def iter_buckets(start: datetime, end: datetime, period: Period) -> Iterator[str]:
    """Every bucket key from start's bucket through end's bucket, inclusive."""
    current = truncate(start, period)
    last = truncate(end, period)
    while current <= last:
        yield bucket_key(current, period)
        current = _next_bucket(current, period)


def fill_buckets(aggregates: List[Aggregate], start: datetime, end: datetime, period: Period) -> List[Aggregate]:
    """One entry per expected bucket, in order; buckets without data are zero."""
    by_bucket = {agg.period_start: agg for agg in aggregates if agg.period == period}
    return [
        by_bucket.get(key) or Aggregate(period=period, period_start=key)
        for key in iter_buckets(start, end, period)
    ]


def estimate_current_visitors(per_minute_views: List[int]) -> int:
    """
    Approximate visitors on site from per-minute page view counts.

    Uses the page views of the busiest minute in the window, so the estimate
    is bounded by the window total.
    This is not a distinct-visitor count.
    """
    if not per_minute_views:
        return 0
    return max(per_minute_views)


class Aggregator:
    def __init__(self, store: AnalyticsStore, settings: Settings, clock: Callable[[], datetime]):
        self.store = store
        self.settings = settings
        self.clock = clock

    def _rollup_ttls(self) -> Dict[Period, Optional[int]]:
        return {
            Period.HOUR: self.settings.hourly_aggregate_ttl_days * DAY_SECONDS,
            Period.DAY: self.settings.daily_aggregate_ttl_days * DAY_SECONDS,
            Period.MONTH: None,
        }

    def record_pageview(self, site_id: str, visitor_id: str, session_id: str, timestamp: datetime) -> None:
        """Bump the realtime counter and the rollups. Failures are logged, never raised."""
        try:
            self.store.increment_realtime(site_id, minute_key(timestamp), self.settings.realtime_ttl_seconds)
        except StorageError as e:
            logger.warning(f"Realtime counter update failed for {site_id}: {e}")

        for period, ttl_seconds in self._rollup_ttls().items():
            try:
                self.store.increment_rollup(
                    site_id,
                    period,
                    bucket_key(timestamp, period),
                    visitor_id,
                    session_id,
                    ttl_seconds,
                    marker_ttl_seconds=_MARKER_TTLS[period],
                )
            except StorageError as e:
                logger.warning(f"{period.value} rollup update failed for {site_id}: {e}")

    def get_stats(self, site_id: str, start: datetime, end: datetime) -> Tuple[List[Aggregate], Period]:
        period = determine_period(start, end)
        aggregates = self.store.list_rollups(site_id, period, bucket_key(start, period), bucket_key(end, period))
        return fill_buckets(aggregates, start, end, period), period

    def get_realtime(self, site_id: str, minutes: int) -> dict:
        minutes = max(1, min(minutes, self.settings.realtime_max_minutes))
        now = self.clock()
        window_start = now - timedelta(minutes=minutes - 1)

        counters = self.store.list_realtime(site_id, minute_key(window_start), minute_key(now))
        per_minute = [counter.page_views for counter in counters]

        return {
            "currentVisitors": estimate_current_visitors(per_minute),
            "pageViews": sum(per_minute),
            "timestamp": iso_timestamp(now),
            "minutes": minutes,
        }

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional

from .aggregation import compute_summary, day_bounds, trends_for
from .metrics import summaries_computed
from .schemas import DashboardSummary, HourlyTrend

logger = logging.getLogger(__name__)

MAX_TREND_HOURS = 168


async def upsert_summary(
    store,
    city: str,
    day: datetime,
    data: DashboardSummary,
    tz: tzinfo,
    now: Optional[datetime] = None,
) -> DashboardSummary:
    """
    Replace the summary stored for (city, day) or create it. ``day`` is
    truncated to midnight in ``tz``; computed_at is set to now.
    """
    now = now or datetime.now(timezone.utc)
    start_of_day, _ = day_bounds(day, tz)
    summary = data.model_copy(update={"city": city, "summary_date": start_of_day})
    saved = await store.upsert(summary, computed_at=now)
    summaries_computed.inc()
    logger.info("Dashboard summary saved for %s (%s)", city, start_of_day.date())
    return saved


async def refresh_summary(
    readings_store,
    summary_store,
    city: str,
    tz: tzinfo,
    now: Optional[datetime] = None,
) -> Optional[DashboardSummary]:
    summary = await compute_summary(readings_store, city, tz, as_of=now)
    if summary is None:
        return None
    return await upsert_summary(summary_store, city, summary.summary_date, summary, tz, now=now)


async def get_dashboard_summary(
    readings_store,
    summary_store,
    city: str,
    tz: tzinfo,
    force_refresh: bool = False,
) -> Optional[DashboardSummary]:
    """
    Cached summary for the dashboard. A forced refresh recomputes first; an
    empty cache is filled on first request. None means no data yet.
    """
    if force_refresh:
        logger.info("Force refresh requested for %s dashboard", city)
        return await refresh_summary(readings_store, summary_store, city, tz)

    summary = await summary_store.get_latest(city)
    if summary is None:
        logger.warning("No cached summary for %s, computing fresh data", city)
        summary = await refresh_summary(readings_store, summary_store, city, tz)
    return summary


async def get_hourly_trends(
    readings_store,
    city: str,
    tz: tzinfo,
    hours: int = 48,
    now: Optional[datetime] = None,
) -> List[HourlyTrend]:
    if not 1 <= hours <= MAX_TREND_HOURS:
        raise ValueError(f"hours must be between 1 and {MAX_TREND_HOURS}")
    return await trends_for(readings_store, city, tz, as_of=now, window=timedelta(hours=hours))

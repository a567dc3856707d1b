import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import ROUND_HALF_CEILING, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .schemas import (
    CurrentSnapshot,
    DashboardSummary,
    HourlyTrend,
    RawReading,
    SummaryStats,
    TodayMetrics,
    YesterdayMetrics,
)

logger = logging.getLogger(__name__)

TREND_WINDOW = timedelta(hours=48)
MAX_TREND_BUCKETS = 48


def round_half_up(value: float, digits: int = 0) -> float:
    """
    Round half values toward +infinity, so -0.05 becomes 0.0 and 0.05
    becomes 0.1 at one digit.
    """
    quantum = Decimal(1).scaleb(-digits)
    # Adding 0.0 turns a negative zero into 0.0.
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_CEILING)) + 0.0


def round_int(value: float) -> int:
    return int(round_half_up(value, 0))


def average(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def most_frequent(values: Iterable[str]) -> str:
    """
    Mode of the values. On a tie the value that appears first in input
    order wins.
    """
    counts: Dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    if not counts:
        return "N/A"
    best = max(counts.values())
    return next(value for value, count in counts.items() if count == best)


def day_bounds(as_of: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    """
    Return (start_of_today, start_of_yesterday) for ``as_of`` in ``tz``.
    """
    local = as_of.astimezone(tz)
    start_of_today = datetime(local.year, local.month, local.day, tzinfo=tz)
    start_of_yesterday = datetime.combine(
        (start_of_today - timedelta(days=1)).date(), start_of_today.timetz()
    )
    return start_of_today, start_of_yesterday


def truncate_to_hour(ts: datetime, tz: tzinfo = timezone.utc) -> datetime:
    return ts.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def compute_today_metrics(readings: Sequence[RawReading]) -> TodayMetrics:
    if not readings:
        return TodayMetrics()

    temperatures = [r.temperature for r in readings]
    return TodayMetrics(
        avg_temperature=round_half_up(average(temperatures), 1),
        min_temperature=round_half_up(min(temperatures), 1),
        max_temperature=round_half_up(max(temperatures), 1),
        avg_humidity=round_int(average([r.humidity for r in readings])),
        avg_pressure=round_int(average([r.pressure for r in readings])),
        avg_wind_speed=round_half_up(average([r.wind_speed for r in readings]), 1),
        dominant_weather=most_frequent(r.weather_main for r in readings),
        data_points_count=len(readings),
    )


def compute_hourly_trends(
    readings: Sequence[RawReading], tz: tzinfo = timezone.utc
) -> List[HourlyTrend]:
    """
    Bucket readings by hour and average each bucket. Only hours that have
    data get a bucket; the newest 48 buckets are kept.
    """
    groups: Dict[datetime, List[RawReading]] = defaultdict(list)
    for reading in readings:
        groups[truncate_to_hour(reading.observed_at, tz)].append(reading)

    trends = []
    for hour in sorted(groups)[-MAX_TREND_BUCKETS:]:
        bucket = groups[hour]
        trends.append(
            HourlyTrend(
                hour=hour,
                avg_temperature=round_half_up(average([r.temperature for r in bucket]), 1),
                avg_humidity=round_int(average([r.humidity for r in bucket])),
                avg_pressure=round_int(average([r.pressure for r in bucket])),
                weather_condition=most_frequent(r.weather_main for r in bucket),
            )
        )
    return trends


def compute_yesterday_metrics(readings: Sequence[RawReading]) -> YesterdayMetrics:
    if not readings:
        return YesterdayMetrics()
    temperatures = [r.temperature for r in readings]
    return YesterdayMetrics(
        avg_temperature=round_half_up(average(temperatures), 1),
        min_temperature=round_half_up(min(temperatures), 1),
        max_temperature=round_half_up(max(temperatures), 1),
    )


def count_weather_changes(readings: Sequence[RawReading]) -> int:
    changes = 0
    for previous, current in zip(readings, readings[1:]):
        if current.weather_main != previous.weather_main:
            changes += 1
    return changes


def compute_stats(readings: Sequence[RawReading]) -> SummaryStats:
    """
    Readings must be sorted by observed_at ascending.
    """
    if not readings:
        return SummaryStats()

    temperatures = [r.temperature for r in readings]
    humidities = [r.humidity for r in readings]
    mean = average(temperatures)
    variance = sum((t - mean) ** 2 for t in temperatures) / len(temperatures)
    return SummaryStats(
        temperature_variance=round_half_up(variance, 2),
        humidity_range=round_int(max(humidities) - min(humidities)),
        weather_change_count=count_weather_changes(readings),
    )


def current_snapshot(reading: RawReading) -> CurrentSnapshot:
    return CurrentSnapshot(
        temperature=reading.temperature,
        feels_like=reading.feels_like,
        humidity=reading.humidity,
        pressure=reading.pressure,
        wind_speed=reading.wind_speed,
        weather_condition=reading.weather_main,
        weather_description=reading.weather_description,
        observed_at=reading.observed_at,
    )


async def trends_for(
    readings_store,
    city: str,
    tz: tzinfo,
    as_of: Optional[datetime] = None,
    window: timedelta = TREND_WINDOW,
) -> List[HourlyTrend]:
    as_of = as_of or datetime.now(timezone.utc)
    recent = await readings_store.find_active(city, start=as_of - window, end=as_of)
    return compute_hourly_trends(recent, tz)


async def compute_summary(
    readings_store,
    city: str,
    tz: tzinfo,
    as_of: Optional[datetime] = None,
) -> Optional[DashboardSummary]:
    """
    Build the dashboard summary for ``city`` as of ``as_of`` (default now).
    Returns None when the city has no readings yet.
    """
    as_of = as_of or datetime.now(timezone.utc)
    start_of_today, start_of_yesterday = day_bounds(as_of, tz)

    latest = await readings_store.get_latest(city)
    if latest is None:
        logger.warning("No weather data available for %s", city)
        return None

    today = await readings_store.find_active(city, start=start_of_today, end=as_of)
    yesterday = await readings_store.find_active(
        city, start=start_of_yesterday, end=start_of_today, end_inclusive=False
    )
    trends = await trends_for(readings_store, city, tz, as_of)

    return DashboardSummary(
        city=city,
        summary_date=start_of_today,
        current=current_snapshot(latest),
        today=compute_today_metrics(today),
        hourly_trends=trends,
        yesterday=compute_yesterday_metrics(yesterday),
        stats=compute_stats(today),
    )

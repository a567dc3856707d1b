import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from . import alerts, rules
from .config import PURGE_GRACE_DAYS, Settings
from .metrics import (
    job_duration,
    job_runs,
    readings_purged,
    readings_soft_deleted,
    readings_stored,
)
from .openweather import fetch_current
from .schemas import JobResult
from .summaries import refresh_summary

logger = logging.getLogger(__name__)

FETCH = "data_fetch"
AGGREGATE = "dashboard_update"
ALERT_CHECK = "alert_check"
CLEANUP = "data_cleanup"

Outcome = Tuple[bool, str, Dict[str, Any]]


@dataclass
class Pipeline:
    """
    Everything a job run needs: settings and the shared stores.
    """

    settings: Settings
    readings: Any
    summaries: Any
    rules: Any
    alerts: Any
    mqtt_client: Any = None
    http_client: Optional[httpx.AsyncClient] = None


async def run_timed(name: str, body: Callable[[], Awaitable[Outcome]]) -> JobResult:
    """
    Run one job body, time it and turn any exception into a failed result.
    Nothing raised by the body escapes.
    """
    started = time.perf_counter()
    logger.info("[%s] Starting", name)
    try:
        success, message, detail = await body()
    except Exception as exc:
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.exception("[%s] Error after %.0fms: %s", name, elapsed_ms, exc)
        job_runs.labels(job=name, outcome="error").inc()
        job_duration.labels(job=name).observe(elapsed_ms / 1000)
        return JobResult(
            job=name,
            success=False,
            message=str(exc) or exc.__class__.__name__,
            duration_ms=round(elapsed_ms, 1),
            error=exc.__class__.__name__,
        )

    elapsed_ms = (time.perf_counter() - started) * 1000
    job_runs.labels(job=name, outcome="success" if success else "skipped").inc()
    job_duration.labels(job=name).observe(elapsed_ms / 1000)
    if success:
        logger.info("[%s] Completed in %.0fms: %s", name, elapsed_ms, message)
    else:
        logger.warning("[%s] Finished without result in %.0fms: %s", name, elapsed_ms, message)
    return JobResult(
        job=name,
        success=success,
        message=message,
        duration_ms=round(elapsed_ms, 1),
        detail=detail,
    )


async def fetch_weather_data(pipeline: Pipeline) -> JobResult:
    async def body() -> Outcome:
        reading = await fetch_current(pipeline.settings, client=pipeline.http_client)
        saved = await pipeline.readings.insert(reading)
        readings_stored.inc()
        logger.info(
            "Stored reading for %s: %s°C, %s, humidity %s%% at %s",
            saved.city,
            saved.temperature,
            saved.weather_main,
            saved.humidity,
            saved.observed_at.isoformat(),
        )
        return (
            True,
            "Weather data fetched and stored",
            {
                "city": saved.city,
                "reading_id": saved.id,
                "temperature": saved.temperature,
                "weather": saved.weather_main,
                "observed_at": saved.observed_at.isoformat(),
            },
        )

    return await run_timed(FETCH, body)


async def update_dashboard_summary(
    pipeline: Pipeline, now: Optional[datetime] = None
) -> JobResult:
    async def body() -> Outcome:
        settings = pipeline.settings
        city = settings.weather_city
        summary = await refresh_summary(
            pipeline.readings, pipeline.summaries, city, settings.tz, now=now
        )
        if summary is None:
            return False, f"No weather data available for {city}", {"city": city}
        logger.info(
            "Summary for %s: current %s°C, today avg %s°C (%s..%s), %s points, %s hourly entries",
            city,
            summary.current.temperature,
            summary.today.avg_temperature,
            summary.today.min_temperature,
            summary.today.max_temperature,
            summary.today.data_points_count,
            len(summary.hourly_trends),
        )
        return (
            True,
            "Dashboard summary updated",
            {
                "city": city,
                "summary_date": summary.summary_date.isoformat(),
                "data_points": summary.today.data_points_count,
                "hourly_trends": len(summary.hourly_trends),
            },
        )

    return await run_timed(AGGREGATE, body)


async def check_weather_alerts(
    pipeline: Pipeline, now: Optional[datetime] = None
) -> JobResult:
    async def body() -> Outcome:
        settings = pipeline.settings
        city = settings.weather_city
        latest = await pipeline.readings.get_latest(city)
        if latest is None:
            return False, "No weather data available for alert checking", {"city": city}

        custom_rules = await pipeline.rules.list_enabled(city)
        candidates = rules.evaluate_all(latest, settings, custom_rules)
        created = await alerts.persist_alerts(
            pipeline.alerts,
            candidates,
            default_cooldown_minutes=settings.alert_cooldown_minutes,
            now=now,
        )
        for event in created:
            logger.info("Alert created: %s %s", event.alert_type.value, event.message)
        notified = await alerts.notify(
            pipeline.alerts,
            created,
            mqtt_client=pipeline.mqtt_client,
            topic_prefix=settings.mqtt_alert_topic_prefix,
        )

        resolved = []
        if settings.alert_auto_resolve:
            resolved = await alerts.resolve_cleared(pipeline.alerts, city, candidates, now=now)

        message = (
            f"{len(created)} alert(s) created" if created else "No alerts triggered"
        )
        return (
            True,
            message,
            {
                "city": city,
                "candidates": len(candidates),
                "alerts_created": len(created),
                "suppressed": len(candidates) - len(created),
                "notified": notified,
                "resolved": len(resolved),
                "alert_ids": [event.id for event in created],
            },
        )

    return await run_timed(ALERT_CHECK, body)


async def cleanup_old_data(pipeline: Pipeline, now: Optional[datetime] = None) -> JobResult:
    async def body() -> Outcome:
        current = now or datetime.now(timezone.utc)
        retention_days = pipeline.settings.data_retention_days
        cutoff = current - timedelta(days=retention_days)
        purge_cutoff = current - timedelta(days=retention_days + PURGE_GRACE_DAYS)

        logger.info("Soft-deleting readings older than %s", cutoff.isoformat())
        soft_deleted = await pipeline.readings.soft_delete_older_than(cutoff, current)
        readings_soft_deleted.inc(soft_deleted)

        purged = await pipeline.readings.purge_deleted_before(purge_cutoff)
        readings_purged.inc(purged)
        if purged:
            logger.info("Readings permanently deleted: %s", purged)

        return (
            True,
            "Data cleanup completed",
            {
                "soft_deleted": soft_deleted,
                "hard_deleted": purged,
                "cutoff": cutoff.isoformat(),
                "purge_cutoff": purge_cutoff.isoformat(),
            },
        )

    return await run_timed(CLEANUP, body)


JOBS: Dict[str, Callable[[Pipeline], Awaitable[JobResult]]] = {
    FETCH: fetch_weather_data,
    AGGREGATE: update_dashboard_summary,
    ALERT_CHECK: check_weather_alerts,
    CLEANUP: cleanup_old_data,
}


def schedules(settings: Settings) -> Dict[str, str]:
    return {
        FETCH: settings.cron_data_fetch,
        AGGREGATE: settings.cron_dashboard_update,
        ALERT_CHECK: settings.cron_alert_check,
        CLEANUP: settings.cron_data_cleanup,
    }

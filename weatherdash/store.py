"""
asyncpg-backed stores for readings, summaries, rules and alerts.

Every method maps to a single SQL statement, so each write is atomic on
its own; nothing here holds a lock across calls.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from .schemas import (
    AlertEvent,
    AlertRule,
    AlertRuleIn,
    AlertType,
    Coordinates,
    DashboardSummary,
    RawReading,
    Severity,
)

logger = logging.getLogger(__name__)

READING_COLUMNS = (
    "city, observed_at, lon, lat, weather_id, weather_main, weather_description, "
    "weather_icon, temperature, feels_like, temp_min, temp_max, pressure, humidity, "
    "sea_level, ground_level, wind_speed, wind_direction, wind_gust, cloudiness, "
    "visibility, country, sunrise, sunset, source_dt, timezone_offset"
)


def _reading_from_row(row) -> RawReading:
    data = dict(row)
    data["coordinates"] = Coordinates(lon=data.pop("lon"), lat=data.pop("lat"))
    return RawReading(**data)


class ReadingStore:
    def __init__(self, pool):
        self.pool = pool

    async def insert(self, reading: RawReading) -> RawReading:
        query = (
            f"INSERT INTO raw_readings ({READING_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, "
            "$15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26) "
            f"RETURNING id, {READING_COLUMNS}, is_deleted, deleted_at, created_at"
        )
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                reading.city,
                reading.observed_at,
                reading.coordinates.lon,
                reading.coordinates.lat,
                reading.weather_id,
                reading.weather_main,
                reading.weather_description,
                reading.weather_icon,
                reading.temperature,
                reading.feels_like,
                reading.temp_min,
                reading.temp_max,
                reading.pressure,
                reading.humidity,
                reading.sea_level,
                reading.ground_level,
                reading.wind_speed,
                reading.wind_direction,
                reading.wind_gust,
                reading.cloudiness,
                reading.visibility,
                reading.country,
                reading.sunrise,
                reading.sunset,
                reading.source_dt,
                reading.timezone_offset,
            )
        return _reading_from_row(row)

    async def find_active(
        self,
        city: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        end_inclusive: bool = True,
    ) -> List[RawReading]:
        """
        Active readings for a city, oldest first.
        """
        conditions = ["city = $1", "NOT is_deleted"]
        params: list = [city]
        if start:
            params.append(start)
            conditions.append(f"observed_at >= ${len(params)}")
        if end:
            params.append(end)
            op = "<=" if end_inclusive else "<"
            conditions.append(f"observed_at {op} ${len(params)}")

        query = (
            f"SELECT id, {READING_COLUMNS}, is_deleted, deleted_at, created_at "
            "FROM raw_readings "
            f"WHERE {' AND '.join(conditions)} "
            "ORDER BY observed_at ASC, id ASC"
        )
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_reading_from_row(row) for row in rows]

    async def get_latest(self, city: str) -> Optional[RawReading]:
        query = (
            f"SELECT id, {READING_COLUMNS}, is_deleted, deleted_at, created_at "
            "FROM raw_readings WHERE city = $1 AND NOT is_deleted "
            "ORDER BY observed_at DESC, id DESC LIMIT 1"
        )
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, city)
        return _reading_from_row(row) if row else None

    async def soft_delete_older_than(self, cutoff: datetime, deleted_at: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "UPDATE raw_readings SET is_deleted = TRUE, deleted_at = $2 "
                "WHERE NOT is_deleted AND observed_at < $1",
                cutoff,
                deleted_at,
            )
        return _affected(status)

    async def purge_deleted_before(self, cutoff: datetime) -> int:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM raw_readings WHERE is_deleted AND deleted_at < $1",
                cutoff,
            )
        return _affected(status)


def _affected(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3" / "DELETE 0".
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


SUMMARY_PARTS = ("current", "today", "hourly_trends", "yesterday", "stats")


def _summary_from_row(row) -> DashboardSummary:
    return DashboardSummary(**dict(row))


class SummaryStore:
    def __init__(self, pool):
        self.pool = pool

    async def upsert(
        self, summary: DashboardSummary, computed_at: datetime
    ) -> DashboardSummary:
        parts = summary.model_dump(mode="json", include=set(SUMMARY_PARTS))
        query = """
        INSERT INTO dashboard_summaries (
            city, summary_date, computed_at, current, today, hourly_trends, yesterday, stats
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (city, summary_date)
        DO UPDATE SET
            computed_at = EXCLUDED.computed_at,
            current = EXCLUDED.current,
            today = EXCLUDED.today,
            hourly_trends = EXCLUDED.hourly_trends,
            yesterday = EXCLUDED.yesterday,
            stats = EXCLUDED.stats
        RETURNING city, summary_date, computed_at, current, today, hourly_trends, yesterday, stats;
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                summary.city,
                summary.summary_date,
                computed_at,
                *(parts[name] for name in SUMMARY_PARTS),
            )
        return _summary_from_row(row)

    async def get_latest(self, city: str) -> Optional[DashboardSummary]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT city, summary_date, computed_at, current, today, hourly_trends, "
                "yesterday, stats FROM dashboard_summaries WHERE city = $1 "
                "ORDER BY computed_at DESC LIMIT 1",
                city,
            )
        return _summary_from_row(row) if row else None

    async def get_by_day(self, city: str, day: datetime) -> Optional[DashboardSummary]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT city, summary_date, computed_at, current, today, hourly_trends, "
                "yesterday, stats FROM dashboard_summaries "
                "WHERE city = $1 AND summary_date = $2",
                city,
                day,
            )
        return _summary_from_row(row) if row else None


RULE_COLUMNS = (
    "id, user_id, city, rule_name, conditions, logic_operator, settings, "
    "is_enabled, created_at, updated_at"
)


class RuleStore:
    def __init__(self, pool):
        self.pool = pool

    async def create(self, rule: AlertRuleIn) -> AlertRule:
        data = rule.model_dump(mode="json")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO alert_rules (user_id, city, rule_name, conditions, "
                "logic_operator, settings, is_enabled) "
                f"VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING {RULE_COLUMNS}",
                data["user_id"],
                data["city"],
                data["rule_name"],
                data["conditions"],
                data["logic_operator"],
                data["settings"],
                data["is_enabled"],
            )
        return AlertRule(**dict(row))

    async def get(self, rule_id: int) -> Optional[AlertRule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {RULE_COLUMNS} FROM alert_rules WHERE id = $1", rule_id
            )
        return AlertRule(**dict(row)) if row else None

    async def update(self, rule_id: int, rule: AlertRuleIn) -> Optional[AlertRule]:
        data = rule.model_dump(mode="json")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE alert_rules SET user_id = $2, city = $3, rule_name = $4, "
                "conditions = $5, logic_operator = $6, settings = $7, is_enabled = $8, "
                f"updated_at = now() WHERE id = $1 RETURNING {RULE_COLUMNS}",
                rule_id,
                data["user_id"],
                data["city"],
                data["rule_name"],
                data["conditions"],
                data["logic_operator"],
                data["settings"],
                data["is_enabled"],
            )
        return AlertRule(**dict(row)) if row else None

    async def disable(self, rule_id: int) -> Optional[AlertRule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE alert_rules SET is_enabled = FALSE, updated_at = now() "
                f"WHERE id = $1 RETURNING {RULE_COLUMNS}",
                rule_id,
            )
        return AlertRule(**dict(row)) if row else None

    async def list(
        self,
        city: str,
        user_id: Optional[str] = None,
        enabled_only: bool = False,
    ) -> List[AlertRule]:
        conditions = ["city = $1"]
        params: list = [city]
        if enabled_only:
            conditions.append("is_enabled")
        if user_id:
            params.append(user_id)
            conditions.append(f"(user_id = ${len(params)} OR user_id IS NULL)")
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {RULE_COLUMNS} FROM alert_rules "
                f"WHERE {' AND '.join(conditions)} ORDER BY id",
                *params,
            )
        return [AlertRule(**dict(row)) for row in rows]

    async def list_enabled(self, city: str, user_id: Optional[str] = None) -> List[AlertRule]:
        return await self.list(city, user_id, enabled_only=True)


ALERT_COLUMNS = (
    "id, city, alert_type, severity, message, threshold, actual_value, is_active, "
    "resolved_at, notification_sent, notification_channels, user_id, rule_id, created_at"
)


def _alert_filters(
    city: Optional[str],
    severity: Optional[Severity] = None,
    alert_type: Optional[AlertType] = None,
) -> Tuple[List[str], list]:
    conditions: List[str] = []
    params: list = []
    if city:
        params.append(city)
        conditions.append(f"city = ${len(params)}")
    if severity:
        params.append(Severity(severity).value)
        conditions.append(f"severity = ${len(params)}")
    if alert_type:
        params.append(AlertType(alert_type).value)
        conditions.append(f"alert_type = ${len(params)}")
    return conditions, params


def _where(conditions: List[str]) -> str:
    return f"WHERE {' AND '.join(conditions)} " if conditions else ""


class AlertStore:
    def __init__(self, pool):
        self.pool = pool

    async def insert(self, event: AlertEvent) -> AlertEvent:
        data = event.model_dump(mode="json")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "INSERT INTO alert_events (city, alert_type, severity, message, threshold, "
                "actual_value, is_active, notification_sent, notification_channels, "
                "user_id, rule_id, created_at) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, COALESCE($12, now())) "
                f"RETURNING {ALERT_COLUMNS}",
                data["city"],
                data["alert_type"],
                data["severity"],
                data["message"],
                data["threshold"],
                data["actual_value"],
                data["is_active"],
                data["notification_sent"],
                data["notification_channels"],
                data["user_id"],
                data["rule_id"],
                event.created_at,
            )
        return AlertEvent(**dict(row))

    async def find_recent_active(
        self,
        city: str,
        alert_type: AlertType,
        since: datetime,
        rule_id: Optional[int] = None,
    ) -> Optional[AlertEvent]:
        conditions = ["city = $1", "alert_type = $2", "is_active", "created_at >= $3"]
        params: list = [city, AlertType(alert_type).value, since]
        if rule_id is not None:
            params.append(rule_id)
            conditions.append(f"rule_id = ${len(params)}")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {ALERT_COLUMNS} FROM alert_events "
                f"WHERE {' AND '.join(conditions)} ORDER BY created_at DESC LIMIT 1",
                *params,
            )
        return AlertEvent(**dict(row)) if row else None

    async def count(
        self,
        city: Optional[str] = None,
        severity: Optional[Severity] = None,
        alert_type: Optional[AlertType] = None,
    ) -> int:
        conditions, params = _alert_filters(city, severity, alert_type)
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT count(*) FROM alert_events {_where(conditions)}", *params
            )

    async def list_recent(
        self,
        city: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        severity: Optional[Severity] = None,
        alert_type: Optional[AlertType] = None,
    ) -> List[AlertEvent]:
        conditions, params = _alert_filters(city, severity, alert_type)
        params.extend([page_size, (page - 1) * page_size])
        query = (
            f"SELECT {ALERT_COLUMNS} FROM alert_events {_where(conditions)}"
            "ORDER BY created_at DESC, id DESC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [AlertEvent(**dict(row)) for row in rows]

    async def list_active(self, city: Optional[str] = None, limit: int = 50) -> List[AlertEvent]:
        conditions, params = _alert_filters(city)
        conditions.append("is_active")
        params.append(limit)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {ALERT_COLUMNS} FROM alert_events {_where(conditions)}"
                f"ORDER BY created_at DESC, id DESC LIMIT ${len(params)}",
                *params,
            )
        return [AlertEvent(**dict(row)) for row in rows]

    async def get(self, alert_id: int) -> Optional[AlertEvent]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {ALERT_COLUMNS} FROM alert_events WHERE id = $1", alert_id
            )
        return AlertEvent(**dict(row)) if row else None

    async def resolve(self, alert_id: int, resolved_at: datetime) -> Optional[AlertEvent]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE alert_events SET is_active = FALSE, "
                "resolved_at = COALESCE(resolved_at, $2) "
                f"WHERE id = $1 RETURNING {ALERT_COLUMNS}",
                alert_id,
                resolved_at,
            )
        return AlertEvent(**dict(row)) if row else None

    async def mark_notified(self, alert_id: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE alert_events SET notification_sent = TRUE WHERE id = $1", alert_id
            )

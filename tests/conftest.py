import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from weatherdash.config import Settings
from weatherdash.jobs import Pipeline
from weatherdash.schemas import (
    AlertEvent,
    AlertRule,
    AlertType,
    Coordinates,
    DashboardSummary,
    RawReading,
)

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


# In-memory stand-ins for the asyncpg stores, same method signatures.
class FakeReadingStore:
    def __init__(self):
        self.rows = []
        self._ids = itertools.count(1)

    async def insert(self, reading):
        saved = reading.model_copy(update={"id": next(self._ids), "created_at": NOW})
        self.rows.append(saved)
        return saved

    async def find_active(self, city, start=None, end=None, end_inclusive=True):
        out = []
        for r in self.rows:
            if r.city != city or r.is_deleted:
                continue
            if start is not None and r.observed_at < start:
                continue
            if end is not None and (r.observed_at > end if end_inclusive else r.observed_at >= end):
                continue
            out.append(r)
        return sorted(out, key=lambda r: (r.observed_at, r.id))

    async def get_latest(self, city):
        active = await self.find_active(city)
        return active[-1] if active else None

    async def soft_delete_older_than(self, cutoff, deleted_at):
        count = 0
        for i, r in enumerate(self.rows):
            if not r.is_deleted and r.observed_at < cutoff:
                self.rows[i] = r.model_copy(update={"is_deleted": True, "deleted_at": deleted_at})
                count += 1
        return count

    async def purge_deleted_before(self, cutoff):
        keep = [r for r in self.rows if not (r.is_deleted and r.deleted_at < cutoff)]
        purged = len(self.rows) - len(keep)
        self.rows = keep
        return purged


class FakeSummaryStore:
    def __init__(self):
        self.rows = {}

    async def upsert(self, summary, computed_at):
        stored = summary.model_copy(update={"computed_at": computed_at})
        # Round-trip through JSON the way the JSONB columns do.
        stored = DashboardSummary.model_validate_json(stored.model_dump_json())
        self.rows[(summary.city, summary.summary_date)] = stored
        return stored

    async def get_latest(self, city):
        rows = [s for (c, _), s in self.rows.items() if c == city]
        return max(rows, key=lambda s: s.computed_at) if rows else None

    async def get_by_day(self, city, day):
        return self.rows.get((city, day))


class FakeRuleStore:
    def __init__(self):
        self.rows = {}
        self._ids = itertools.count(1)

    async def create(self, rule):
        saved = AlertRule(**rule.model_dump(), id=next(self._ids), created_at=NOW, updated_at=NOW)
        self.rows[saved.id] = saved
        return saved

    async def get(self, rule_id):
        return self.rows.get(rule_id)

    async def update(self, rule_id, rule):
        if rule_id not in self.rows:
            return None
        saved = AlertRule(**rule.model_dump(), id=rule_id, created_at=NOW, updated_at=NOW)
        self.rows[rule_id] = saved
        return saved

    async def disable(self, rule_id):
        if rule_id not in self.rows:
            return None
        self.rows[rule_id] = self.rows[rule_id].model_copy(update={"is_enabled": False})
        return self.rows[rule_id]

    async def list(self, city, user_id=None, enabled_only=False):
        return [
            r
            for r in self.rows.values()
            if r.city == city
            and (not enabled_only or r.is_enabled)
            and (user_id is None or r.user_id in (None, user_id))
        ]

    async def list_enabled(self, city, user_id=None):
        return await self.list(city, user_id, enabled_only=True)


class FakeAlertStore:
    def __init__(self):
        self.rows = {}
        self.notified = []
        self._ids = itertools.count(1)

    async def insert(self, event):
        saved = event.model_copy(update={"id": next(self._ids)})
        self.rows[saved.id] = saved
        return saved

    async def find_recent_active(self, city, alert_type, since, rule_id=None):
        for e in sorted(self.rows.values(), key=lambda e: e.created_at, reverse=True):
            if (
                e.city == city
                and e.alert_type == AlertType(alert_type)
                and e.is_active
                and e.created_at >= since
                and (rule_id is None or e.rule_id == rule_id)
            ):
                return e
        return None

    def _filtered(self, city=None, severity=None, alert_type=None):
        events = [
            e
            for e in self.rows.values()
            if (city is None or e.city == city)
            and (severity is None or e.severity == severity)
            and (alert_type is None or e.alert_type == alert_type)
        ]
        return sorted(events, key=lambda e: (e.created_at, e.id), reverse=True)

    async def count(self, city=None, severity=None, alert_type=None):
        return len(self._filtered(city, severity, alert_type))

    async def list_recent(self, city=None, page=1, page_size=20, severity=None, alert_type=None):
        events = self._filtered(city, severity, alert_type)
        return events[(page - 1) * page_size : page * page_size]

    async def list_active(self, city=None, limit=50):
        return [e for e in self._filtered(city) if e.is_active][:limit]

    async def get(self, alert_id):
        return self.rows.get(alert_id)

    async def resolve(self, alert_id, resolved_at):
        event = self.rows.get(alert_id)
        if event is None:
            return None
        if event.is_active:
            event = event.model_copy(update={"is_active": False, "resolved_at": resolved_at})
            self.rows[alert_id] = event
        return event

    async def mark_notified(self, alert_id):
        self.notified.append(alert_id)
        self.rows[alert_id] = self.rows[alert_id].model_copy(update={"notification_sent": True})


class FakeMqttClient:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    def publish(self, topic, payload):
        if self.fail:
            raise OSError("broker gone")
        self.published.append((topic, payload))

    def is_connected(self):
        return True


def _make_reading(
    observed_at=NOW,
    temperature=30.0,
    humidity=60,
    weather_main="Clear",
    city="Pune",
    pressure=1010,
    wind_speed=10.0,
    **extra,
):
    data = dict(
        city=city,
        observed_at=observed_at,
        coordinates=Coordinates(lon=73.8567, lat=18.5204),
        weather_id=800,
        weather_main=weather_main,
        weather_description=weather_main.lower(),
        weather_icon="01d",
        temperature=temperature,
        feels_like=temperature,
        temp_min=temperature,
        temp_max=temperature,
        pressure=pressure,
        humidity=humidity,
        wind_speed=wind_speed,
        wind_direction=180,
        cloudiness=0,
        visibility=10000,
        country="IN",
        sunrise=observed_at.replace(hour=0, minute=30),
        sunset=observed_at.replace(hour=13, minute=0),
        source_dt=int(observed_at.timestamp()),
        timezone_offset=19800,
    )
    data.update(extra)
    return RawReading(**data)


@pytest.fixture()
def make_reading():
    return _make_reading


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        timezone="UTC",
        weather_city="Pune",
        weather_country_code="IN",
        openweather_api_key="test-key",
        openweather_api_url="https://weather.test/data/2.5/weather",
        alert_high_temp_threshold=35,
        alert_high_humidity_threshold=80,
        data_retention_days=2,
    )


@pytest.fixture()
def readings():
    return FakeReadingStore()


@pytest.fixture()
def summaries():
    return FakeSummaryStore()


@pytest.fixture()
def rule_store():
    return FakeRuleStore()


@pytest.fixture()
def alert_store():
    return FakeAlertStore()


@pytest.fixture()
def mqtt():
    return FakeMqttClient()


@pytest.fixture()
def pipeline(settings, readings, summaries, rule_store, alert_store):
    return Pipeline(
        settings=settings,
        readings=readings,
        summaries=summaries,
        rules=rule_store,
        alerts=alert_store,
    )


@pytest.fixture()
def seeded(readings, make_reading):
    """
    Three Pune readings this morning: 30/32/34°C, 50/60/70% humidity, all Clear.
    """

    async def seed():
        for minutes, temp, hum in ((0, 30, 50), (30, 32, 60), (60, 34, 70)):
            await readings.insert(
                make_reading(
                    observed_at=NOW.replace(hour=9) + timedelta(minutes=minutes),
                    temperature=temp,
                    humidity=hum,
                )
            )

    asyncio.run(seed())
    return readings


def _make_alert(**overrides):
    data = dict(
        city="Pune",
        alert_type=AlertType.HIGH_TEMP,
        severity="WARNING",
        message="hot",
        threshold={"parameter": "temperature", "operator": ">", "value": 35},
        actual_value={"temperature": 36, "observed_at": NOW},
        created_at=NOW,
    )
    data.update(overrides)
    return AlertEvent(**data)


@pytest.fixture()
def make_alert():
    return _make_alert


@pytest.fixture()
def now():
    return NOW

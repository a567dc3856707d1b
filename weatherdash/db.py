import json
import logging
from typing import Optional

import asyncpg

from .config import Settings, get_settings
from .utils import retry

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_readings (
    id BIGSERIAL PRIMARY KEY,
    city TEXT NOT NULL,
    observed_at TIMESTAMPTZ NOT NULL,
    lon DOUBLE PRECISION NOT NULL,
    lat DOUBLE PRECISION NOT NULL,
    weather_id INTEGER NOT NULL,
    weather_main TEXT NOT NULL,
    weather_description TEXT NOT NULL,
    weather_icon TEXT NOT NULL,
    temperature DOUBLE PRECISION NOT NULL,
    feels_like DOUBLE PRECISION NOT NULL,
    temp_min DOUBLE PRECISION NOT NULL,
    temp_max DOUBLE PRECISION NOT NULL,
    pressure DOUBLE PRECISION NOT NULL,
    humidity DOUBLE PRECISION NOT NULL CHECK (humidity BETWEEN 0 AND 100),
    sea_level DOUBLE PRECISION,
    ground_level DOUBLE PRECISION,
    wind_speed DOUBLE PRECISION NOT NULL,
    wind_direction DOUBLE PRECISION NOT NULL CHECK (wind_direction BETWEEN 0 AND 360),
    wind_gust DOUBLE PRECISION,
    cloudiness DOUBLE PRECISION NOT NULL CHECK (cloudiness BETWEEN 0 AND 100),
    visibility DOUBLE PRECISION NOT NULL,
    country TEXT NOT NULL,
    sunrise TIMESTAMPTZ NOT NULL,
    sunset TIMESTAMPTZ NOT NULL,
    source_dt BIGINT NOT NULL,
    timezone_offset INTEGER NOT NULL,
    is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS raw_readings_city_observed_idx
    ON raw_readings (city, observed_at DESC) WHERE NOT is_deleted;
CREATE INDEX IF NOT EXISTS raw_readings_deleted_idx
    ON raw_readings (deleted_at) WHERE is_deleted;

CREATE TABLE IF NOT EXISTS dashboard_summaries (
    id BIGSERIAL PRIMARY KEY,
    city TEXT NOT NULL,
    summary_date TIMESTAMPTZ NOT NULL,
    computed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    current JSONB NOT NULL,
    today JSONB NOT NULL,
    hourly_trends JSONB NOT NULL,
    yesterday JSONB NOT NULL,
    stats JSONB NOT NULL,
    UNIQUE (city, summary_date)
);
CREATE INDEX IF NOT EXISTS dashboard_summaries_computed_idx
    ON dashboard_summaries (city, computed_at DESC);

CREATE TABLE IF NOT EXISTS alert_rules (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT,
    city TEXT NOT NULL,
    rule_name TEXT NOT NULL,
    conditions JSONB NOT NULL,
    logic_operator TEXT NOT NULL DEFAULT 'AND',
    settings JSONB NOT NULL,
    is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS alert_rules_city_idx ON alert_rules (city, is_enabled);

CREATE TABLE IF NOT EXISTS alert_events (
    id BIGSERIAL PRIMARY KEY,
    city TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    threshold JSONB NOT NULL,
    actual_value JSONB NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    resolved_at TIMESTAMPTZ,
    notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
    notification_channels TEXT[] NOT NULL DEFAULT '{console}',
    user_id TEXT,
    rule_id BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS alert_events_dedup_idx
    ON alert_events (city, alert_type, created_at DESC) WHERE is_active;
CREATE INDEX IF NOT EXISTS alert_events_city_created_idx
    ON alert_events (city, created_at DESC);
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


async def get_pool(settings: Optional[Settings] = None) -> asyncpg.pool.Pool:
    """
    Lazily create and return a connection pool.
    """
    global _pool
    if _pool is None:
        settings = settings or get_settings()
        _pool = await retry(
            lambda: asyncpg.create_pool(
                dsn=settings.postgres_dsn,
                min_size=1,
                max_size=5,
                statement_cache_size=200,
                init=_init_connection,
            ),
            attempts=5,
            delay_seconds=2.0,
        )
    return _pool


async def init_schema(pool: asyncpg.pool.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
    logger.info("Database schema ready")


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None

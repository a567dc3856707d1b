import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from . import alerts as alert_log
from .config import get_settings
from .db import close_pool, get_pool, init_schema
from .jobs import JOBS, Pipeline, schedules
from .mqtt_client import start_mqtt_publisher, stop_mqtt_publisher
from .scheduler import JobAlreadyRunning, JobScheduler, UnknownJob
from .schemas import (
    AlertEvent,
    AlertPage,
    AlertRule,
    AlertRuleIn,
    AlertType,
    DashboardSummary,
    HourlyTrend,
    JobResult,
    Pagination,
    RawReading,
    Severity,
)
from .store import AlertStore, ReadingStore, RuleStore, SummaryStore
from .summaries import MAX_TREND_HOURS, get_dashboard_summary, get_hourly_trends
from .utils import paginate

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def build_scheduler(pipeline: Pipeline) -> JobScheduler:
    scheduler = JobScheduler(pipeline.settings.tz)
    for name, schedule in schedules(pipeline.settings).items():
        scheduler.add_job(name, schedule, partial(JOBS[name], pipeline))
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_pool = await get_pool(settings)
    await init_schema(db_pool)
    # The connect retry sleeps between attempts, so keep it off the event loop.
    mqtt_client = await asyncio.to_thread(start_mqtt_publisher, settings)

    pipeline = Pipeline(
        settings=settings,
        readings=ReadingStore(db_pool),
        summaries=SummaryStore(db_pool),
        rules=RuleStore(db_pool),
        alerts=AlertStore(db_pool),
        mqtt_client=mqtt_client,
    )
    scheduler = build_scheduler(pipeline)
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Scheduler disabled; jobs run only when triggered over HTTP.")

    app.state.pipeline = pipeline
    app.state.scheduler = scheduler

    yield

    # Shutdown order: stop timers and drain runs, stop MQTT, close DB pool.
    await scheduler.stop(timeout=settings.shutdown_timeout_seconds)
    stop_mqtt_publisher(mqtt_client)
    await close_pool()


app = FastAPI(
    title="Weather Dashboard Pipeline",
    version="0.1.0",
    description="Polls current weather, keeps daily summaries and raises threshold alerts.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    expected = settings.api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


@app.get("/health")
async def health(request: Request):
    db_status = "ok"
    try:
        pool = request.app.state.pipeline.readings.pool
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1;")
    except Exception as exc:  # pragma: no cover - lightweight health check
        db_status = f"error: {exc}"
    mqtt_client = getattr(request.app.state.pipeline, "mqtt_client", None)
    return {
        "status": "ok",
        "db": db_status,
        "mqtt_connected": bool(mqtt_client and mqtt_client.is_connected()),
        "jobs": {name: job["state"] for name, job in get_scheduler(request).status().items()},
    }


@app.get("/ready")
async def ready(request: Request):
    """
    Readiness probe: returns 503 while the database is unavailable.
    """
    try:
        pool = request.app.state.pipeline.readings.pool
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1;")
    except Exception:
        raise HTTPException(status_code=503, detail={"db": False})
    return {"status": "ready", "db": True}


@app.get(
    "/dashboard/summary",
    response_model=DashboardSummary,
    summary="Pre-computed dashboard summary; refresh=true recomputes first",
)
async def dashboard_summary(
    city: Optional[str] = None,
    refresh: bool = False,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    city = city or settings.weather_city
    summary = await get_dashboard_summary(
        pipeline.readings, pipeline.summaries, city, settings.tz, force_refresh=refresh
    )
    if summary is None:
        raise HTTPException(
            status_code=404,
            detail=f"No dashboard data available for {city}. Please wait for data collection.",
        )
    return summary


@app.get("/dashboard/trends", response_model=List[HourlyTrend])
async def dashboard_trends(
    city: Optional[str] = None,
    hours: int = Query(48, ge=1, le=MAX_TREND_HOURS),
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await get_hourly_trends(
        pipeline.readings, city or settings.weather_city, settings.tz, hours=hours
    )


@app.get("/weather/current", response_model=RawReading)
async def current_weather(
    city: Optional[str] = None,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    city = city or settings.weather_city
    reading = await pipeline.readings.get_latest(city)
    if reading is None:
        raise HTTPException(status_code=404, detail=f"No weather data available for {city}.")
    return reading


@app.get("/alerts/active", response_model=List[AlertEvent])
async def active_alerts(
    city: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await pipeline.alerts.list_active(city, limit=limit)


@app.get("/alerts/history", response_model=AlertPage)
async def alert_history(
    city: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    severity: Optional[Severity] = None,
    alert_type: Optional[AlertType] = None,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    events = await pipeline.alerts.list_recent(
        city, page=page, page_size=limit, severity=severity, alert_type=alert_type
    )
    total = await pipeline.alerts.count(city, severity=severity, alert_type=alert_type)
    return AlertPage(data=events, pagination=Pagination(**paginate(page, limit, total)))


@app.post("/alerts/{alert_id}/resolve", response_model=AlertEvent)
async def resolve_alert(
    alert_id: int,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        return await alert_log.resolve(pipeline.alerts, alert_id)
    except alert_log.AlertNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/alerts/rules", response_model=List[AlertRule])
async def list_rules(
    city: Optional[str] = None,
    user_id: Optional[str] = None,
    include_disabled: bool = False,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await pipeline.rules.list(
        city or settings.weather_city, user_id, enabled_only=not include_disabled
    )


@app.post("/alerts/rules", response_model=AlertRule, status_code=201)
async def create_rule(
    rule: AlertRuleIn,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    created = await pipeline.rules.create(rule)
    logger.info("Created alert rule %s (%s) for %s", created.id, created.rule_name, created.city)
    return created


async def _rule_or_404(pipeline: Pipeline, rule_id: int) -> AlertRule:
    rule = await pipeline.rules.get(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return rule


@app.get("/alerts/rules/{rule_id}", response_model=AlertRule)
async def get_rule(
    rule_id: int,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await _rule_or_404(pipeline, rule_id)


@app.put("/alerts/rules/{rule_id}", response_model=AlertRule)
async def update_rule(
    rule_id: int,
    rule: AlertRuleIn,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    updated = await pipeline.rules.update(rule_id, rule)
    if updated is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    logger.info("Updated alert rule %s", rule_id)
    return updated


@app.delete("/alerts/rules/{rule_id}", response_model=AlertRule)
async def disable_rule(
    rule_id: int,
    _: None = Depends(require_api_key),
    pipeline: Pipeline = Depends(get_pipeline),
):
    disabled = await pipeline.rules.disable(rule_id)
    if disabled is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    logger.info("Disabled alert rule %s", rule_id)
    return disabled


@app.get("/jobs")
async def job_status(
    _: None = Depends(require_api_key),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    return {
        "server_time": datetime.now(timezone.utc).isoformat(),
        "jobs": scheduler.status(),
    }


@app.post("/jobs/{name}/run", response_model=JobResult)
async def run_job(
    name: str,
    _: None = Depends(require_api_key),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    try:
        return await scheduler.run_job(name)
    except UnknownJob:
        raise HTTPException(status_code=404, detail=f"Unknown job {name!r}")
    except JobAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

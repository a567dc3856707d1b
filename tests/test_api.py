import asyncio

import pytest
from fastapi.testclient import TestClient

from weatherdash import main
from weatherdash.jobs import JOBS
from weatherdash.scheduler import JobAlreadyRunning

RULE = {
    "user_id": "u1",
    "city": "Pune",
    "rule_name": "Hot afternoon",
    "conditions": [
        {"parameter": "temperature", "operator": ">", "value": 33, "unit": "°C"},
        {"parameter": "weatherCondition", "operator": "contains", "value": "clear"},
    ],
    "logic_operator": "AND",
    "settings": {
        "severity": "WARNING",
        "message_template": "It is {temperature}°C in {city}",
        "notification_channels": ["console"],
        "cooldown_minutes": 30,
    },
}


@pytest.fixture()
def client(pipeline):
    # No lifespan: the stores are in-memory fakes.
    main.app.state.pipeline = pipeline
    main.app.state.scheduler = main.build_scheduler(pipeline)
    return TestClient(main.app)


def test_summary_without_data_is_404(client):
    resp = client.get("/dashboard/summary")
    assert resp.status_code == 404
    assert "Please wait for data collection" in resp.json()["detail"]


def test_summary_and_current_weather(client, seeded):
    resp = client.get("/dashboard/summary", params={"city": "Pune"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["city"] == "Pune"
    assert body["current"]["temperature"] == 34.0
    assert body["computed_at"] is not None

    current = client.get("/weather/current")
    assert current.status_code == 200
    assert current.json()["humidity"] == 70


def test_current_weather_without_data(client):
    assert client.get("/weather/current").status_code == 404


def test_trends_hours_bounds(client, seeded):
    assert client.get("/dashboard/trends", params={"hours": 0}).status_code == 422
    assert client.get("/dashboard/trends", params={"hours": 169}).status_code == 422
    assert client.get("/dashboard/trends", params={"hours": 168}).status_code == 200


def test_rule_lifecycle(client):
    created = client.post("/alerts/rules", json=RULE)
    assert created.status_code == 201
    rule = created.json()
    assert rule["id"] == 1
    assert rule["conditions"][0]["threshold"] == {"kind": "number", "value": 33.0}
    assert rule["conditions"][1]["threshold"] == {"kind": "text", "value": "clear"}

    assert client.get(f"/alerts/rules/{rule['id']}").json()["rule_name"] == "Hot afternoon"

    changed = dict(RULE, rule_name="Very hot afternoon")
    updated = client.put(f"/alerts/rules/{rule['id']}", json=changed)
    assert updated.status_code == 200
    assert updated.json()["rule_name"] == "Very hot afternoon"

    disabled = client.delete(f"/alerts/rules/{rule['id']}")
    assert disabled.json()["is_enabled"] is False
    assert client.get("/alerts/rules").json() == []
    assert len(client.get("/alerts/rules", params={"include_disabled": True}).json()) == 1


def test_unknown_rule_is_404(client):
    assert client.get("/alerts/rules/99").status_code == 404
    assert client.put("/alerts/rules/99", json=RULE).status_code == 404
    assert client.delete("/alerts/rules/99").status_code == 404


@pytest.mark.parametrize(
    "change",
    [
        {"conditions": []},
        {"conditions": [{"parameter": "weatherCondition", "operator": ">", "value": "Rain"}]},
        {"conditions": [{"parameter": "dewPoint", "operator": ">", "value": 20}]},
        {"settings": {"message_template": "x", "cooldown_minutes": 0}},
        {"settings": {"message_template": "x", "notification_channels": ["pager"]}},
    ],
)
def test_invalid_rule_is_422(client, change):
    assert client.post("/alerts/rules", json=dict(RULE, **change)).status_code == 422


def test_alert_history_pagination(client, alert_store, make_alert):
    async def seed():
        for message in ("one", "two", "three"):
            await alert_store.insert(make_alert(message=message))

    asyncio.run(seed())
    resp = client.get("/alerts/history", params={"page": 1, "limit": 2})
    body = resp.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {
        "page": 1,
        "limit": 2,
        "total_records": 3,
        "total_pages": 2,
        "has_next_page": True,
        "has_previous_page": False,
    }
    second = client.get("/alerts/history", params={"page": 2, "limit": 2}).json()
    assert len(second["data"]) == 1
    assert not second["pagination"]["has_next_page"]

    filtered = client.get("/alerts/history", params={"severity": "CRITICAL"}).json()
    assert filtered["pagination"]["total_records"] == 0


def test_resolve_alert(client, alert_store, make_alert):
    saved = asyncio.run(alert_store.insert(make_alert()))
    resp = client.post(f"/alerts/{saved.id}/resolve")
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert client.get("/alerts/active").json() == []
    assert client.post("/alerts/999/resolve").status_code == 404


def test_job_status_lists_all_jobs(client):
    jobs = client.get("/jobs").json()["jobs"]
    assert set(jobs) == set(JOBS)
    assert all(job["state"] == "idle" for job in jobs.values())


def test_run_job_now(client):
    resp = client.post("/jobs/data_cleanup/run")
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert client.post("/jobs/nope/run").status_code == 404


def test_run_job_already_running_is_409(client):
    class BusyScheduler:
        async def run_job(self, name):
            raise JobAlreadyRunning(f"Job {name} is already running")

    main.app.state.scheduler = BusyScheduler()
    resp = client.post("/jobs/data_fetch/run")
    assert resp.status_code == 409
    assert "already running" in resp.json()["detail"]


def test_api_key_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(main.settings, "api_key", "secret")
    assert client.get("/alerts/active").status_code == 401
    assert client.get("/alerts/active", headers={"X-API-Key": "secret"}).status_code == 200


def test_ready_reports_database_down(client):
    assert client.get("/ready").status_code == 503


def test_metrics_endpoint(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "job_runs_total" in resp.text


def test_lifespan_connects_mqtt_off_the_event_loop(monkeypatch):
    calls = {}

    async def fake_get_pool(settings):
        return object()

    async def fake_init_schema(pool):
        calls["schema"] = True

    async def fake_close_pool():
        calls["closed"] = True

    def fake_start_mqtt(settings):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            calls["mqtt_thread"] = True
        else:
            calls["mqtt_thread"] = False
        return None

    monkeypatch.setattr(main, "get_pool", fake_get_pool)
    monkeypatch.setattr(main, "init_schema", fake_init_schema)
    monkeypatch.setattr(main, "close_pool", fake_close_pool)
    monkeypatch.setattr(main, "start_mqtt_publisher", fake_start_mqtt)
    monkeypatch.setattr(main.settings, "scheduler_enabled", False)

    with TestClient(main.app) as client:
        assert client.get("/health").status_code == 200

    assert calls == {"schema": True, "mqtt_thread": True, "closed": True}

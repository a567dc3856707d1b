import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from .metrics import alerts_emitted, alerts_suppressed, notification_failures
from .schemas import AlertCandidate, AlertEvent, AlertType, Channel

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MINUTES = 15


class AlertNotFound(LookupError):
    pass


async def create_if_not_duplicate(
    store,
    candidate: AlertCandidate,
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
    now: Optional[datetime] = None,
) -> Optional[AlertEvent]:
    """
    Insert the alert unless an active one for the same city/type (and rule)
    was raised inside the cooldown window. Returns None when suppressed.

    Check and insert are two statements; two evaluations racing inside
    the same window can both insert.
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=cooldown_minutes)
    existing = await store.find_recent_active(
        candidate.city, candidate.alert_type, since, rule_id=candidate.rule_id
    )
    if existing is not None:
        logger.info(
            "Suppressed duplicate %s alert for %s (active alert %s within %s min)",
            candidate.alert_type.value,
            candidate.city,
            existing.id,
            cooldown_minutes,
        )
        alerts_suppressed.inc()
        return None

    event = AlertEvent(
        **candidate.model_dump(exclude={"cooldown_minutes"}),
        is_active=True,
        notification_sent=False,
        created_at=now,
    )
    saved = await store.insert(event)
    alerts_emitted.inc()
    return saved


async def persist_alerts(
    store,
    candidates: Sequence[AlertCandidate],
    default_cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
    now: Optional[datetime] = None,
) -> List[AlertEvent]:
    created: List[AlertEvent] = []
    for candidate in candidates:
        cooldown = candidate.cooldown_minutes or default_cooldown_minutes
        event = await create_if_not_duplicate(store, candidate, cooldown, now=now)
        if event is not None:
            created.append(event)
    return created


async def resolve(store, alert_id: int, now: Optional[datetime] = None) -> AlertEvent:
    now = now or datetime.now(timezone.utc)
    event = await store.resolve(alert_id, now)
    if event is None:
        raise AlertNotFound(f"Alert {alert_id} not found")
    logger.info("Resolved alert %s (%s, %s)", event.id, event.alert_type.value, event.city)
    return event


async def resolve_cleared(
    store,
    city: str,
    fired: Iterable[AlertCandidate],
    now: Optional[datetime] = None,
) -> List[AlertEvent]:
    """
    Resolve active alerts for ``city`` whose built-in type or custom rule
    did not fire in this evaluation.
    """
    still_firing = {(c.alert_type, c.rule_id) for c in fired}
    resolved: List[AlertEvent] = []
    for event in await store.list_active(city, limit=500):
        key = (event.alert_type, event.rule_id if event.alert_type == AlertType.CUSTOM else None)
        if key in still_firing:
            continue
        resolved.append(await resolve(store, event.id, now=now))
    return resolved


def publish_alert(mqtt_client, topic_prefix: str, event: AlertEvent) -> bool:
    try:
        info = mqtt_client.publish(
            f"{topic_prefix}/{event.city}",
            json.dumps(event.model_dump(mode="json")),
        )
    except Exception as exc:
        logger.warning("Failed to publish alert for %s: %s", event.city, exc)
        notification_failures.inc()
        return False
    if getattr(info, "rc", 0) != 0:
        logger.warning("MQTT publish for %s returned rc=%s", event.city, info.rc)
        notification_failures.inc()
        return False
    return True


async def notify(
    store,
    events: Sequence[AlertEvent],
    mqtt_client=None,
    topic_prefix: str = "alerts",
) -> int:
    """
    Deliver new alerts on their channels and flag the delivered ones.
    Delivery is best effort. Returns the number of alerts delivered.
    """
    delivered = 0
    for event in events:
        sent = False
        if Channel.CONSOLE in event.notification_channels:
            logger.warning(
                "ALERT [%s] %s %s: %s",
                event.severity.value,
                event.alert_type.value,
                event.city,
                event.message,
            )
            sent = True
        if mqtt_client is not None:
            sent = publish_alert(mqtt_client, topic_prefix, event) or sent
        if sent and event.id is not None:
            await store.mark_notified(event.id)
            event.notification_sent = True
            delivered += 1
    return delivered

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Union

from .config import Settings
from .schemas import (
    ActualValue,
    AlertCandidate,
    AlertRule,
    AlertType,
    Channel,
    Condition,
    LogicOperator,
    NumericThreshold,
    Operator,
    Parameter,
    RawReading,
    Severity,
    ThresholdSnapshot,
)

logger = logging.getLogger(__name__)

FieldValue = Union[float, str]

# Rule parameters resolve through this table only.
FIELD_ACCESSORS: Dict[Parameter, Callable[[RawReading], FieldValue]] = {
    Parameter.TEMPERATURE: lambda r: r.temperature,
    Parameter.HUMIDITY: lambda r: r.humidity,
    Parameter.WEATHER_CONDITION: lambda r: r.weather_main,
    Parameter.WIND_SPEED: lambda r: r.wind_speed,
    Parameter.PRESSURE: lambda r: r.pressure,
    Parameter.VISIBILITY: lambda r: r.visibility,
}

PLACEHOLDER = re.compile(r"\{(\w+)\}")

HIGH_TEMP_CRITICAL_MARGIN = 5
HIGH_HUMIDITY_CRITICAL_MARGIN = 10


def _compare(value, op: Operator, threshold) -> bool:
    if op == Operator.GT:
        return value > threshold
    if op == Operator.LT:
        return value < threshold
    if op == Operator.GE:
        return value >= threshold
    if op == Operator.LE:
        return value <= threshold
    if op == Operator.EQ:
        return value == threshold
    if op == Operator.NE:
        return value != threshold
    return False


def evaluate_condition(condition: Condition, reading: RawReading) -> bool:
    value = FIELD_ACCESSORS[condition.parameter](reading)
    threshold = condition.threshold.value

    if condition.operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        found = _as_text(threshold).lower() in _as_text(value).lower()
        return found if condition.operator == Operator.CONTAINS else not found

    if isinstance(condition.threshold, NumericThreshold):
        return _compare(float(value), condition.operator, threshold)
    return _compare(str(value), condition.operator, threshold)


def _as_text(value: FieldValue) -> str:
    # 35.0 -> "35", matching how the value is usually typed in a rule.
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_rule(rule: AlertRule, reading: RawReading) -> bool:
    results = [evaluate_condition(c, reading) for c in rule.conditions]
    if rule.logic_operator == LogicOperator.AND:
        return all(results)
    return any(results)


def template_fields(reading: RawReading) -> Dict[str, str]:
    fields = {param.value: _as_text(get(reading)) for param, get in FIELD_ACCESSORS.items()}
    for name, value in reading.model_dump(exclude={"coordinates"}).items():
        if value is not None:
            fields.setdefault(name, _as_text(value) if isinstance(value, float) else str(value))
    fields.setdefault("weatherMain", reading.weather_main)
    fields.setdefault("weatherDescription", reading.weather_description)
    fields.setdefault("feelsLike", _as_text(reading.feels_like))
    return fields


def render_message(template: str, reading: RawReading) -> str:
    """
    Replace ``{name}`` placeholders with reading values. Unknown names are
    left as they are.
    """
    fields = template_fields(reading)
    return PLACEHOLDER.sub(lambda m: fields.get(m.group(1), m.group(0)), template)


def actual_value(reading: RawReading) -> ActualValue:
    return ActualValue(
        temperature=reading.temperature,
        humidity=reading.humidity,
        weather_condition=reading.weather_main,
        wind_speed=reading.wind_speed,
        pressure=reading.pressure,
        observed_at=reading.observed_at,
    )


def check_builtin_thresholds(reading: RawReading, settings: Settings) -> List[AlertCandidate]:
    candidates: List[AlertCandidate] = []
    snapshot = actual_value(reading)
    high_temp = settings.alert_high_temp_threshold
    high_humidity = settings.alert_high_humidity_threshold

    if reading.temperature > high_temp:
        candidates.append(
            AlertCandidate(
                city=reading.city,
                alert_type=AlertType.HIGH_TEMP,
                severity=Severity.CRITICAL
                if reading.temperature > high_temp + HIGH_TEMP_CRITICAL_MARGIN
                else Severity.WARNING,
                message=(
                    f"High temperature detected: {_as_text(reading.temperature)}°C "
                    f"(Threshold: {_as_text(high_temp)}°C)"
                ),
                threshold=ThresholdSnapshot(
                    parameter=Parameter.TEMPERATURE, operator=Operator.GT, value=high_temp, unit="°C"
                ),
                actual_value=snapshot,
            )
        )

    if reading.humidity > high_humidity:
        candidates.append(
            AlertCandidate(
                city=reading.city,
                alert_type=AlertType.HIGH_HUMIDITY,
                severity=Severity.CRITICAL
                if reading.humidity > high_humidity + HIGH_HUMIDITY_CRITICAL_MARGIN
                else Severity.WARNING,
                message=(
                    f"High humidity detected: {_as_text(reading.humidity)}% "
                    f"(Threshold: {_as_text(high_humidity)}%)"
                ),
                threshold=ThresholdSnapshot(
                    parameter=Parameter.HUMIDITY, operator=Operator.GT, value=high_humidity, unit="%"
                ),
                actual_value=snapshot,
            )
        )

    if reading.weather_main in settings.alert_extreme_weather:
        candidates.append(
            AlertCandidate(
                city=reading.city,
                alert_type=AlertType.EXTREME_WEATHER,
                severity=Severity.CRITICAL,
                message=(
                    f"Extreme weather condition: {reading.weather_main} - "
                    f"{reading.weather_description}"
                ),
                threshold=ThresholdSnapshot(
                    parameter=Parameter.WEATHER_CONDITION,
                    operator=Operator.CONTAINS,
                    value=reading.weather_main,
                    unit="",
                ),
                actual_value=snapshot,
            )
        )
    return candidates


def check_custom_rules(reading: RawReading, rules: Sequence[AlertRule]) -> List[AlertCandidate]:
    candidates: List[AlertCandidate] = []
    for rule in rules:
        if not rule.is_enabled or rule.city != reading.city:
            continue
        if not evaluate_rule(rule, reading):
            continue
        # Only the first condition is kept as the threshold snapshot.
        first = rule.conditions[0]
        candidates.append(
            AlertCandidate(
                city=reading.city,
                alert_type=AlertType.CUSTOM,
                severity=rule.settings.severity,
                message=render_message(rule.settings.message_template, reading),
                threshold=ThresholdSnapshot(
                    parameter=first.parameter,
                    operator=first.operator,
                    value=first.threshold.value,
                    unit=first.unit,
                ),
                actual_value=actual_value(reading),
                notification_channels=list(rule.settings.notification_channels or [Channel.CONSOLE]),
                user_id=rule.user_id,
                rule_id=rule.id,
                cooldown_minutes=rule.settings.cooldown_minutes,
            )
        )
        logger.debug("Rule %s (%s) matched for %s", rule.id, rule.rule_name, reading.city)
    return candidates


def evaluate_all(
    reading: RawReading,
    settings: Settings,
    rules: Optional[Sequence[AlertRule]] = None,
) -> List[AlertCandidate]:
    """
    Built-in thresholds first, then custom rules. Every match is returned.
    """
    return check_builtin_thresholds(reading, settings) + check_custom_rules(reading, rules or [])

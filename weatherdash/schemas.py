from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class Coordinates(BaseModel):
    lon: float
    lat: float


class RawReading(BaseModel):
    id: Optional[int] = None
    city: str
    observed_at: datetime
    coordinates: Coordinates
    weather_id: int
    weather_main: str
    weather_description: str
    weather_icon: str
    temperature: float
    feels_like: float
    temp_min: float
    temp_max: float
    pressure: float
    humidity: float = Field(ge=0, le=100)
    sea_level: Optional[float] = None
    ground_level: Optional[float] = None
    wind_speed: float = Field(description="km/h")
    wind_direction: float = Field(ge=0, le=360)
    wind_gust: Optional[float] = Field(None, description="km/h")
    cloudiness: float = Field(ge=0, le=100)
    visibility: float = Field(description="meters")
    country: str
    sunrise: datetime
    sunset: datetime
    source_dt: int
    timezone_offset: int
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CurrentSnapshot(BaseModel):
    temperature: float
    feels_like: float
    humidity: float
    pressure: float
    wind_speed: float
    weather_condition: str
    weather_description: str
    observed_at: datetime


class TodayMetrics(BaseModel):
    avg_temperature: float = 0
    min_temperature: float = 0
    max_temperature: float = 0
    avg_humidity: int = 0
    avg_pressure: int = 0
    avg_wind_speed: float = 0
    dominant_weather: str = "N/A"
    data_points_count: int = 0


class HourlyTrend(BaseModel):
    hour: datetime
    avg_temperature: float
    avg_humidity: int
    avg_pressure: int
    weather_condition: str


class YesterdayMetrics(BaseModel):
    avg_temperature: float = 0
    min_temperature: float = 0
    max_temperature: float = 0


class SummaryStats(BaseModel):
    temperature_variance: float = 0
    humidity_range: int = 0
    weather_change_count: int = 0


class DashboardSummary(BaseModel):
    city: str
    summary_date: datetime
    computed_at: Optional[datetime] = None
    current: CurrentSnapshot
    today: TodayMetrics
    hourly_trends: List[HourlyTrend] = Field(default_factory=list, max_length=48)
    yesterday: YesterdayMetrics
    stats: SummaryStats


class AlertType(str, Enum):
    HIGH_TEMP = "HIGH_TEMP"
    LOW_TEMP = "LOW_TEMP"
    HIGH_HUMIDITY = "HIGH_HUMIDITY"
    LOW_HUMIDITY = "LOW_HUMIDITY"
    EXTREME_WEATHER = "EXTREME_WEATHER"
    HIGH_WIND = "HIGH_WIND"
    CUSTOM = "CUSTOM"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    CONSOLE = "console"


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Parameter(str, Enum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    WEATHER_CONDITION = "weatherCondition"
    WIND_SPEED = "windSpeed"
    PRESSURE = "pressure"
    VISIBILITY = "visibility"


class Operator(str, Enum):
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


NUMERIC_OPERATORS = {Operator.GT, Operator.LT, Operator.GE, Operator.LE, Operator.EQ, Operator.NE}
TEXT_PARAMETERS = {Parameter.WEATHER_CONDITION}


class NumericThreshold(BaseModel):
    kind: Literal["number"] = "number"
    value: float


class TextThreshold(BaseModel):
    kind: Literal["text"] = "text"
    value: str


Threshold = Annotated[Union[NumericThreshold, TextThreshold], Field(discriminator="kind")]


class Condition(BaseModel):
    parameter: Parameter
    operator: Operator
    threshold: Threshold
    unit: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def tag_threshold(cls, data: Any) -> Any:
        # Accept a bare "value" and tag it by its type.
        if isinstance(data, dict) and "threshold" not in data and "value" in data:
            data = dict(data)
            value = data.pop("value")
            if isinstance(value, bool):
                raise ValueError("Threshold value must be a number or a string")
            if isinstance(value, (int, float)):
                data["threshold"] = {"kind": "number", "value": value}
            else:
                data["threshold"] = {"kind": "text", "value": value}
        return data

    @model_validator(mode="after")
    def check_operator(self) -> "Condition":
        if self.operator in NUMERIC_OPERATORS:
            if self.parameter in TEXT_PARAMETERS:
                if self.operator not in (Operator.EQ, Operator.NE):
                    raise ValueError(
                        f"Operator {self.operator.value!r} cannot be applied to "
                        f"text parameter {self.parameter.value!r}; use contains/not_contains"
                    )
                if not isinstance(self.threshold, TextThreshold):
                    raise ValueError(
                        f"Parameter {self.parameter.value!r} needs a text threshold"
                    )
            elif not isinstance(self.threshold, NumericThreshold):
                raise ValueError(
                    f"Operator {self.operator.value!r} on {self.parameter.value!r} "
                    "needs a numeric threshold"
                )
        return self


class RuleSettings(BaseModel):
    severity: Severity = Severity.WARNING
    message_template: str = Field(min_length=1)
    notification_channels: List[Channel] = [Channel.CONSOLE]
    cooldown_minutes: int = Field(15, ge=1, le=1440)


class AlertRuleIn(BaseModel):
    user_id: Optional[str] = None
    city: str = Field(min_length=1)
    rule_name: str = Field(min_length=1)
    conditions: List[Condition] = Field(min_length=1)
    logic_operator: LogicOperator = LogicOperator.AND
    settings: RuleSettings
    is_enabled: bool = True


class AlertRule(AlertRuleIn):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ThresholdSnapshot(BaseModel):
    parameter: Parameter
    operator: Operator
    value: Union[float, str]
    unit: Optional[str] = None


class ActualValue(BaseModel):
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    weather_condition: Optional[str] = None
    wind_speed: Optional[float] = None
    pressure: Optional[float] = None
    observed_at: datetime


class AlertCandidate(BaseModel):
    city: str
    alert_type: AlertType
    severity: Severity
    message: str
    threshold: ThresholdSnapshot
    actual_value: ActualValue
    notification_channels: List[Channel] = [Channel.CONSOLE]
    user_id: Optional[str] = None
    rule_id: Optional[int] = None
    cooldown_minutes: Optional[int] = Field(None, ge=1, le=1440)


class AlertEvent(BaseModel):
    id: Optional[int] = None
    city: str
    alert_type: AlertType
    severity: Severity
    message: str
    threshold: ThresholdSnapshot
    actual_value: ActualValue
    is_active: bool = True
    resolved_at: Optional[datetime] = None
    notification_sent: bool = False
    notification_channels: List[Channel] = [Channel.CONSOLE]
    user_id: Optional[str] = None
    rule_id: Optional[int] = None
    created_at: Optional[datetime] = None


class JobResult(BaseModel):
    job: str
    success: bool
    message: str
    duration_ms: float = 0.0
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total_records: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class AlertPage(BaseModel):
    data: List[AlertEvent]
    pagination: Pagination

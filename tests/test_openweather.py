import asyncio
from datetime import datetime, timezone

import pytest

from weatherdash.openweather import WeatherProviderError, fetch_current, transform_payload

PAYLOAD = {
    "coord": {"lon": 73.8553, "lat": 18.5196},
    "weather": [{"id": 211, "main": "Thunderstorm", "description": "thunderstorm", "icon": "11d"}],
    "main": {
        "temp": 27.05,
        "feels_like": 29.9,
        "temp_min": 26.94,
        "temp_max": 27.05,
        "pressure": 1004,
        "humidity": 83,
    },
    "visibility": 6000,
    "wind": {"speed": 8.75, "deg": 250},
    "clouds": {"all": 75},
    "dt": 1718445600,
    "sys": {"country": "IN", "sunrise": 1718411460, "sunset": 1718459220},
    "timezone": 19800,
}


def test_transform_converts_units():
    reading = transform_payload("Pune", PAYLOAD)
    assert reading.city == "Pune"
    assert reading.observed_at == datetime(2024, 6, 15, 10, 0, tzinfo=timezone.utc)
    assert reading.temperature == 27.1
    assert reading.temp_min == 26.9
    assert reading.wind_speed == 31.5
    assert reading.wind_gust is None
    assert reading.sea_level is None
    assert reading.weather_main == "Thunderstorm"
    assert reading.cloudiness == 75
    assert reading.timezone_offset == 19800


def test_transform_rejects_missing_fields():
    broken = {k: v for k, v in PAYLOAD.items() if k != "main"}
    with pytest.raises(WeatherProviderError, match="main"):
        transform_payload("Pune", broken)
    with pytest.raises(WeatherProviderError):
        transform_payload("Pune", dict(PAYLOAD, weather=[]))


def test_fetch_needs_api_key(settings):
    settings.openweather_api_key = None
    with pytest.raises(WeatherProviderError, match="OPENWEATHER_API_KEY"):
        asyncio.run(fetch_current(settings))

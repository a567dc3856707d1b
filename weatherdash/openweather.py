import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .aggregation import round_half_up
from .config import Settings
from .schemas import Coordinates, RawReading

logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6


class WeatherProviderError(RuntimeError):
    pass


def _round1(value: float) -> float:
    return round_half_up(value, 1)


def _instant(unix_seconds: int) -> datetime:
    return datetime.fromtimestamp(unix_seconds, tz=timezone.utc)


def transform_payload(city: str, data: Dict[str, Any]) -> RawReading:
    """
    Map an OpenWeather current-weather payload (units=metric) onto a reading.
    Wind speeds are converted from m/s to km/h.
    """
    try:
        weather = data["weather"][0]
        main = data["main"]
        wind = data.get("wind", {})
        sys = data["sys"]
        gust = wind.get("gust")
        return RawReading(
            city=city,
            observed_at=_instant(data["dt"]),
            coordinates=Coordinates(lon=data["coord"]["lon"], lat=data["coord"]["lat"]),
            weather_id=weather["id"],
            weather_main=weather["main"],
            weather_description=weather["description"],
            weather_icon=weather["icon"],
            temperature=_round1(main["temp"]),
            feels_like=_round1(main["feels_like"]),
            temp_min=_round1(main["temp_min"]),
            temp_max=_round1(main["temp_max"]),
            pressure=main["pressure"],
            humidity=main["humidity"],
            sea_level=main.get("sea_level"),
            ground_level=main.get("grnd_level"),
            wind_speed=_round1(wind.get("speed", 0) * MS_TO_KMH),
            wind_direction=wind.get("deg", 0),
            wind_gust=_round1(gust * MS_TO_KMH) if gust else None,
            cloudiness=data.get("clouds", {}).get("all", 0),
            visibility=data.get("visibility", 0),
            country=sys["country"],
            sunrise=_instant(sys["sunrise"]),
            sunset=_instant(sys["sunset"]),
            source_dt=data["dt"],
            timezone_offset=data.get("timezone", 0),
        )
    except (KeyError, IndexError, TypeError) as exc:
        raise WeatherProviderError(f"Malformed provider payload: missing {exc}") from exc


async def fetch_current(
    settings: Settings, client: Optional[httpx.AsyncClient] = None
) -> RawReading:
    """
    Fetch current conditions for the configured city. Raises
    WeatherProviderError on transport errors or a non-200 response.
    """
    if not settings.openweather_api_key:
        raise WeatherProviderError("OPENWEATHER_API_KEY is not configured")

    params = {
        "q": f"{settings.weather_city},{settings.weather_country_code}",
        "appid": settings.openweather_api_key,
        "units": "metric",
    }
    logger.info("Fetching weather data for %s", settings.weather_city)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as owned:
                resp = await owned.get(settings.openweather_api_url, params=params)
        else:
            resp = await client.get(settings.openweather_api_url, params=params)
    except httpx.HTTPError as exc:
        raise WeatherProviderError(f"No response from weather API: {exc}") from exc

    if resp.status_code != 200:
        try:
            detail = resp.json().get("message", resp.text)
        except ValueError:
            detail = resp.text
        raise WeatherProviderError(f"API error {resp.status_code}: {detail}")

    reading = transform_payload(settings.weather_city, resp.json())
    logger.debug(
        "Temperature: %s°C, Weather: %s", reading.temperature, reading.weather_main
    )
    return reading

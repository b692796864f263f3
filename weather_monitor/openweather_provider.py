import logging
from datetime import datetime, tzinfo
from typing import Any, Dict, Optional, Protocol
from zoneinfo import ZoneInfo

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import (
    InvalidCredential,
    MalformedResponse,
    MissingCredential,
    RateLimited,
    TransientFetchFailure,
)
from .schemas import CityInfo, Reading, TemperatureUnit

logger = logging.getLogger(__name__)


class ReadingProvider(Protocol):
    async def fetch_reading(
        self, city: CityInfo, api_key: Optional[str], unit: TemperatureUnit
    ) -> Reading: ...


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """None keeps the host's local time."""
    return ZoneInfo(name) if name else None


def parse_current_weather(
    city: CityInfo, data: Dict[str, Any], tz: Optional[tzinfo] = None
) -> Reading:
    """
    Normalize an OpenWeather /data/2.5/weather payload into a Reading.
    Temperatures are taken as-is; the request's ``units`` decides the scale.
    """
    try:
        main = data["main"]
        weather = data["weather"][0]
        ts = int(data["dt"])
        observed = datetime.fromtimestamp(ts, tz=tz)
        return Reading(
            city_id=city.id,
            city_name=data.get("name") or city.name,
            timestamp=ts,
            date=observed.date(),
            time=observed.strftime("%H:%M:%S"),
            temp=main["temp"],
            feels_like=main["feels_like"],
            temp_min=main["temp_min"],
            temp_max=main["temp_max"],
            humidity=main["humidity"],
            wind_speed=(data.get("wind") or {}).get("speed", 0.0),
            condition=weather["main"],
            description=weather.get("description", ""),
            icon_code=weather.get("icon", ""),
        )
    except (KeyError, IndexError, TypeError, ValueError, ValidationError) as exc:
        raise MalformedResponse(
            f"Unexpected OpenWeather payload for {city.id}: {exc!r}", city_id=city.id
        ) from exc


class OpenWeatherProvider:
    """
    Fetch current conditions from OpenWeather for a city {id, name, lat, lon}.
    """

    def __init__(
        self,
        base_url: str = "https://api.openweathermap.org",
        timeout: float = 10.0,
        tz: Optional[tzinfo] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.tz = tz
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenWeatherProvider":
        return cls(
            base_url=settings.openweather_base_url,
            timeout=settings.request_timeout_seconds,
            tz=resolve_timezone(settings.display_timezone),
        )

    async def fetch_reading(
        self, city: CityInfo, api_key: Optional[str], unit: TemperatureUnit
    ) -> Reading:
        if not api_key:
            raise MissingCredential("No OpenWeather API key configured", city_id=city.id)

        url = f"{self.base_url}/data/2.5/weather"
        params = {
            "lat": city.lat,
            "lon": city.lon,
            "appid": api_key,
            "units": unit.provider_units,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise TransientFetchFailure(
                f"OpenWeather request failed for {city.id}: {exc}", city_id=city.id
            ) from exc

        if resp.status_code == 401:
            raise InvalidCredential("OpenWeather rejected the API key", city_id=city.id)
        if resp.status_code == 429:
            raise RateLimited("OpenWeather rate limit reached", city_id=city.id)
        if resp.status_code >= 400:
            raise TransientFetchFailure(
                f"OpenWeather returned HTTP {resp.status_code} for {city.id}",
                city_id=city.id,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponse(
                f"OpenWeather returned invalid JSON for {city.id}", city_id=city.id
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponse(
                f"OpenWeather returned a non-object payload for {city.id}", city_id=city.id
            )

        reading = parse_current_weather(city, data, self.tz)
        logger.debug("Fetched %s: %s %s", city.id, reading.temp, reading.condition)
        return reading

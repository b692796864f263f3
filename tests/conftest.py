from datetime import date
from itertools import count
from typing import Dict, Optional

import pytest

from weather_monitor.schemas import CityInfo, Reading, TemperatureUnit

_timestamps = count(1_714_550_400, 300)

CITIES = [
    CityInfo(id="delhi", name="Delhi", lat=28.6139, lon=77.2090),
    CityInfo(id="mumbai", name="Mumbai", lat=19.0760, lon=72.8777),
    CityInfo(id="chennai", name="Chennai", lat=13.0827, lon=80.2707),
    CityInfo(id="bangalore", name="Bangalore", lat=12.9716, lon=77.5946),
    CityInfo(id="kolkata", name="Kolkata", lat=22.5726, lon=88.3639),
    CityInfo(id="hyderabad", name="Hyderabad", lat=17.3850, lon=78.4867),
]


def build_reading(
    temp: float = 25.0,
    condition: str = "Clear",
    city_id: str = "delhi",
    day: date = date(2024, 5, 1),
    timestamp: Optional[int] = None,
    humidity: float = 50.0,
    wind_speed: float = 3.0,
) -> Reading:
    return Reading(
        city_id=city_id,
        city_name=city_id.title(),
        timestamp=next(_timestamps) if timestamp is None else timestamp,
        date=day,
        time="12:00:00",
        temp=temp,
        feels_like=temp,
        temp_min=temp - 1,
        temp_max=temp + 1,
        humidity=humidity,
        wind_speed=wind_speed,
        condition=condition,
        description=condition.lower(),
        icon_code="01d",
    )


class FakeProvider:
    """Serves queued temperatures per city, or raises a queued ProviderError."""

    def __init__(self, results: Optional[Dict[str, list]] = None):
        self.results = results or {}
        self.calls = []

    async def fetch_reading(self, city: CityInfo, api_key, unit: TemperatureUnit) -> Reading:
        self.calls.append((city.id, api_key, unit))
        queue = self.results.get(city.id) or [25.0]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        if isinstance(result, Reading):
            return result
        return build_reading(temp=result, city_id=city.id)


@pytest.fixture
def make_reading():
    return build_reading


@pytest.fixture
def cities():
    return [city.model_copy() for city in CITIES]


@pytest.fixture
def fake_provider():
    return FakeProvider()

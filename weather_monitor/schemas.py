from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .errors import CREDENTIAL_FAILURES


class TemperatureUnit(str, Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"

    @property
    def symbol(self) -> str:
        return "°C" if self is TemperatureUnit.CELSIUS else "°F"

    @property
    def provider_units(self) -> str:
        """Value of the OpenWeather ``units`` query parameter."""
        return "metric" if self is TemperatureUnit.CELSIUS else "imperial"


class CityInfo(BaseModel):
    id: str
    name: str
    lat: float
    lon: float


class Reading(BaseModel):
    """One normalized observation for a city. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    city_id: str
    city_name: str
    timestamp: int = Field(description="Observation time, epoch seconds.")
    date: date
    time: str
    temp: float
    feels_like: float
    temp_min: float
    temp_max: float
    humidity: float
    wind_speed: float
    condition: str
    description: str = ""
    icon_code: str = ""


class DailySummary(BaseModel):
    city_id: str
    date: date
    avg_temp: float
    min_temp: float
    max_temp: float
    dominant_condition: str
    condition_count: Dict[str, int]
    avg_humidity: float
    avg_wind_speed: float
    records: List[Reading]


class AlertConfig(BaseModel):
    enabled: bool = True
    high_temp: float = 35.0
    low_temp: float = 10.0
    consecutive_readings: int = Field(default=2, ge=1, le=10)
    weather_condition: Optional[str] = None

    @field_validator("weather_condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        if not value or value.lower() == "none":
            return None
        return value


class AlertType(str, Enum):
    HIGH_TEMP = "high_temp"
    LOW_TEMP = "low_temp"
    WEATHER_CONDITION = "weather_condition"


class Alert(BaseModel):
    id: str
    city: str
    timestamp: int
    type: AlertType
    message: str
    value: Union[float, str]
    threshold: Union[float, str]
    acknowledged: bool = False


class MonitorConfig(BaseModel):
    """Runtime configuration, editable while the service is running."""

    api_key: Optional[str] = None
    update_interval: int = Field(default=5, ge=1, le=60, description="Minutes.")
    temperature_unit: TemperatureUnit = TemperatureUnit.CELSIUS
    cities: List[CityInfo]
    alerts: Dict[str, AlertConfig] = Field(default_factory=dict)

    def city(self, city_id: str) -> Optional[CityInfo]:
        for city in self.cities:
            if city.id == city_id:
                return city
        return None


class CycleReport(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    updated: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(
        default_factory=dict, description="city id -> failure kind"
    )
    alerts: List[Alert] = Field(default_factory=list)

    @computed_field
    @property
    def credential_failure(self) -> bool:
        return any(kind in CREDENTIAL_FAILURES for kind in self.failures.values())


class ConfigView(BaseModel):
    has_api_key: bool
    update_interval: int
    temperature_unit: TemperatureUnit
    cities: List[CityInfo]


class ConfigUpdate(BaseModel):
    api_key: Optional[str] = None
    update_interval: Optional[int] = Field(default=None, ge=1, le=60)
    temperature_unit: Optional[TemperatureUnit] = None


class AlertStatus(BaseModel):
    total: int
    unacknowledged: int

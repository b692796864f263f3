from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas import AlertConfig, CityInfo, TemperatureUnit

DEFAULT_CITIES: List[CityInfo] = [
    CityInfo(id="delhi", name="Delhi", lat=28.6139, lon=77.2090),
    CityInfo(id="mumbai", name="Mumbai", lat=19.0760, lon=72.8777),
    CityInfo(id="chennai", name="Chennai", lat=13.0827, lon=80.2707),
    CityInfo(id="bangalore", name="Bangalore", lat=12.9716, lon=77.5946),
    CityInfo(id="kolkata", name="Kolkata", lat=22.5726, lon=88.3639),
    CityInfo(id="hyderabad", name="Hyderabad", lat=17.3850, lon=78.4867),
]


class Settings(BaseSettings):
    openweather_api_key: Optional[str] = None
    openweather_base_url: str = "https://api.openweathermap.org"
    request_timeout_seconds: float = 10.0

    update_interval_minutes: int = 5
    temperature_unit: TemperatureUnit = TemperatureUnit.CELSIUS
    # IANA zone used to derive a reading's calendar date; None means local time.
    display_timezone: Optional[str] = None
    cities: List[CityInfo] = DEFAULT_CITIES

    max_records_per_city: int = 100
    max_alerts: int = 50

    alert_enabled: bool = True
    alert_high_temp: float = 35.0
    alert_low_temp: float = 10.0
    alert_consecutive_readings: int = 2
    alert_weather_condition: str = ""

    credential_failure_limit: int = 3

    api_key: Optional[str] = None
    allowed_origins: List[str] = ["*"]

    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_topic_prefix: str = "alerts"

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    def default_alert_config(self) -> AlertConfig:
        return AlertConfig(
            enabled=self.alert_enabled,
            high_temp=self.alert_high_temp,
            low_temp=self.alert_low_temp,
            consecutive_readings=self.alert_consecutive_readings,
            weather_condition=self.alert_weather_condition,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()

import asyncio
from datetime import date

import pytest
from pydantic import ValidationError

from conftest import FakeProvider, build_reading
from weather_monitor.config import Settings
from weather_monitor.errors import (
    InvalidCredential,
    MalformedResponse,
    RateLimited,
    TransientFetchFailure,
)
from weather_monitor.monitor import MonitorState, WeatherMonitor
from weather_monitor.schemas import AlertConfig, AlertType, CityInfo, MonitorConfig, TemperatureUnit


def make_state(cities, api_key="test-key", **kwargs) -> MonitorState:
    return MonitorState(MonitorConfig(api_key=api_key, cities=cities), **kwargs)


def never_returns():
    sleeps = []
    slept = asyncio.Event()

    async def sleep(seconds):
        sleeps.append(seconds)
        slept.set()
        await asyncio.Event().wait()

    return sleep, sleeps, slept


def test_state_gives_every_city_an_alert_config(cities):
    state = make_state(cities)
    assert set(state.config.alerts) == {c.id for c in cities}
    assert state.config.alerts["delhi"] == AlertConfig()


def test_state_from_settings():
    settings = Settings(
        openweather_api_key="abc",
        update_interval_minutes=10,
        temperature_unit="fahrenheit",
        max_records_per_city=7,
        max_alerts=4,
        alert_high_temp=40,
        alert_weather_condition="Rain",
    )
    state = MonitorState.from_settings(settings)

    assert state.config.api_key == "abc"
    assert state.config.update_interval == 10
    assert state.store.max_records_per_city == 7
    assert state.alert_log.max_alerts == 4
    assert state.engine.unit_symbol == "°F"
    assert len(state.config.alerts) == 6
    assert state.config.alerts["delhi"].high_temp == 40
    assert state.config.alerts["delhi"].weather_condition == "Rain"


def test_apply_reading_evaluates_against_prior_history(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities), fake_provider)
    updates = []
    monitor.on_update(updates.append)

    assert monitor.apply_reading("delhi", build_reading(temp=36)) is None
    alert = monitor.apply_reading("delhi", build_reading(temp=37))

    assert alert is not None
    assert alert.type is AlertType.HIGH_TEMP
    assert monitor.state.alert_log.list() == [alert]
    assert monitor.state.store.count("delhi") == 2
    assert monitor.state.aggregator.summary("delhi", date(2024, 5, 1)).avg_temp == 36.5
    assert updates == ["delhi", "delhi"]


def test_apply_reading_condition_alert_on_first_reading(cities, fake_provider):
    state = make_state(cities)
    state.config.alerts["delhi"] = AlertConfig(weather_condition="Thunderstorm")
    monitor = WeatherMonitor(state, fake_provider)

    alert = monitor.apply_reading("delhi", build_reading(condition="Thunderstorm"))

    assert alert.type is AlertType.WEATHER_CONDITION


async def test_poll_once_updates_every_city(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities), fake_provider)

    report = await monitor.poll_once()

    assert report.updated == [c.id for c in cities]
    assert report.failures == {}
    assert report.finished_at is not None
    assert monitor.state.last_updated is not None
    assert monitor.state.is_loading is False
    assert monitor.state.last_report is report
    for city in cities:
        assert monitor.state.store.count(city.id) == 1
        assert monitor.state.aggregator.dates(city.id) == [date(2024, 5, 1)]
    assert fake_provider.calls[0] == ("delhi", "test-key", TemperatureUnit.CELSIUS)


async def test_partial_failure_does_not_block_other_cities(cities):
    provider = FakeProvider(
        {
            "mumbai": [TransientFetchFailure("timeout")],
            "kolkata": [RateLimited("slow down")],
        }
    )
    monitor = WeatherMonitor(make_state(cities), provider)

    report = await monitor.poll_once()

    assert report.updated == ["delhi", "chennai", "bangalore", "hyderabad"]
    assert report.failures == {"mumbai": "network_error", "kolkata": "rate_limited"}
    assert report.credential_failure is False
    assert monitor.state.store.count("mumbai") == 0
    assert monitor.state.aggregator.summaries("kolkata") == {}
    assert monitor.state.store.count("delhi") == 1


async def test_failed_city_keeps_previous_data(cities):
    provider = FakeProvider({"delhi": [30.0, MalformedResponse("bad")]})
    monitor = WeatherMonitor(make_state(cities), provider)

    await monitor.poll_once()
    before = monitor.state.aggregator.summaries("delhi")
    report = await monitor.poll_once()

    assert report.failures == {"delhi": "malformed_response"}
    assert monitor.state.store.count("delhi") == 1
    assert monitor.state.aggregator.summaries("delhi") == before


async def test_unexpected_provider_exception_is_contained(cities):
    provider = FakeProvider({"chennai": [RuntimeError("boom")]})
    monitor = WeatherMonitor(make_state(cities), provider)

    report = await monitor.poll_once()

    assert report.failures == {"chennai": "network_error"}
    assert len(report.updated) == 5


async def test_missing_credential_skips_fetching(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities, api_key=None), fake_provider)

    report = await monitor.poll_once()

    assert fake_provider.calls == []
    assert report.updated == []
    assert set(report.failures.values()) == {"missing_credential"}
    assert report.credential_failure is True
    assert monitor.state.last_updated is None


async def test_alerts_are_reported_per_cycle(cities):
    provider = FakeProvider({"delhi": [36.0, 37.0]})
    monitor = WeatherMonitor(make_state(cities), provider)

    first = await monitor.poll_once()
    second = await monitor.poll_once()

    assert first.alerts == []
    assert [a.city for a in second.alerts] == ["delhi"]


async def test_results_applied_in_city_order(cities):
    class SlowFirstProvider(FakeProvider):
        async def fetch_reading(self, city, api_key, unit):
            if city.id == "delhi":
                await asyncio.sleep(0.01)
            return await super().fetch_reading(city, api_key, unit)

    monitor = WeatherMonitor(make_state(cities), SlowFirstProvider())
    applied = []
    monitor.on_update(applied.append)

    await monitor.poll_once()

    assert applied == [c.id for c in cities]


async def test_credential_failures_counted_and_reset(cities):
    provider = FakeProvider({c.id: [InvalidCredential("401")] for c in cities})
    monitor = WeatherMonitor(make_state(cities), provider)

    report = await monitor.poll_once()
    await monitor.poll_once()

    assert report.credential_failure is True
    assert monitor.state.consecutive_credential_failures == 2

    provider.results = {}
    await monitor.poll_once()
    assert monitor.state.consecutive_credential_failures == 0


async def test_run_stops_after_repeated_invalid_credentials(cities):
    provider = FakeProvider({c.id: [InvalidCredential("401")] for c in cities})
    sleeps = []

    async def no_wait(seconds):
        sleeps.append(seconds)

    monitor = WeatherMonitor(
        make_state(cities), provider, credential_failure_limit=3, sleep=no_wait
    )

    await asyncio.wait_for(monitor.run(), timeout=1)

    assert len(provider.calls) == 3 * len(cities)
    assert sleeps == [300, 300]


async def test_run_fetches_immediately_then_waits_interval(cities, fake_provider):
    sleep, sleeps, slept = never_returns()
    state = make_state(cities)
    state.config.update_interval = 2
    monitor = WeatherMonitor(state, fake_provider, sleep=sleep)

    monitor.start()
    await asyncio.wait_for(slept.wait(), timeout=1)

    assert monitor.is_running
    assert monitor.state.store.count() == len(cities)
    assert sleeps == [120]

    await monitor.stop()
    assert not monitor.is_running


async def test_run_waits_first_when_data_exists(cities, fake_provider):
    sleep, sleeps, slept = never_returns()
    monitor = WeatherMonitor(make_state(cities), fake_provider, sleep=sleep)
    monitor.apply_reading("delhi", build_reading())

    monitor.start()
    await asyncio.wait_for(slept.wait(), timeout=1)

    assert fake_provider.calls == []
    await monitor.stop()


async def test_start_without_credential_does_nothing(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities, api_key=None), fake_provider)
    monitor.start()
    assert not monitor.is_running
    await monitor.stop()


async def test_update_config_validates_and_applies(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities), fake_provider)

    updated = await monitor.update_config(temperature_unit="fahrenheit")

    assert updated.temperature_unit is TemperatureUnit.FAHRENHEIT
    assert monitor.state.engine.unit_symbol == "°F"
    with pytest.raises(ValidationError):
        await monitor.update_config(update_interval=0)
    assert monitor.state.config.update_interval == 5


async def test_update_config_new_credential_starts_polling(cities, fake_provider):
    sleep, sleeps, slept = never_returns()
    monitor = WeatherMonitor(make_state(cities, api_key=None), fake_provider, sleep=sleep)
    monitor.state.consecutive_credential_failures = 2

    await monitor.update_config(api_key="fresh")
    await asyncio.wait_for(slept.wait(), timeout=1)

    assert monitor.is_running
    assert monitor.state.consecutive_credential_failures == 0
    assert fake_provider.calls[0][1] == "fresh"
    await monitor.stop()


async def test_update_config_new_city_gets_default_alerts(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities[:1], api_key=None), fake_provider)
    pune = CityInfo(id="pune", name="Pune", lat=18.52, lon=73.85)

    await monitor.update_config(cities=[*monitor.state.config.cities, pune])

    assert monitor.state.config.alerts["pune"] == AlertConfig()


def test_update_alert_config(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities), fake_provider)

    updated = monitor.update_alert_config("delhi", high_temp=30, consecutive_readings=1)

    assert updated.high_temp == 30
    assert updated.low_temp == 10
    assert monitor.state.config.alerts["delhi"] is updated
    with pytest.raises(ValidationError):
        monitor.update_alert_config("delhi", consecutive_readings=0)
    assert monitor.state.config.alerts["delhi"].consecutive_readings == 1
    with pytest.raises(KeyError):
        monitor.update_alert_config("atlantis", high_temp=1)


def test_clear_readings_drops_summaries(cities, fake_provider):
    monitor = WeatherMonitor(make_state(cities), fake_provider)
    updates = []
    monitor.on_update(updates.append)
    monitor.apply_reading("delhi", build_reading(city_id="delhi"))
    monitor.apply_reading("mumbai", build_reading(city_id="mumbai"))

    monitor.clear_readings("delhi")
    assert monitor.state.aggregator.summaries("delhi") == {}
    assert monitor.state.aggregator.dates("mumbai") == [date(2024, 5, 1)]

    monitor.clear_readings()
    assert monitor.state.aggregator.summaries("mumbai") == {}
    assert updates[-2:] == ["delhi", None]


def test_alert_passthroughs(cities, fake_provider):
    state = make_state(cities)
    state.config.alerts["delhi"] = AlertConfig(consecutive_readings=1)
    monitor = WeatherMonitor(state, fake_provider)
    alert = monitor.apply_reading("delhi", build_reading(temp=50))

    assert monitor.acknowledge_alert(alert.id)
    assert not monitor.acknowledge_alert("missing")
    monitor.clear_alerts()
    assert monitor.state.alert_log.list() == []


async def test_overlapping_cycles_run_in_turn(cities):
    gate = asyncio.Event()
    active = []
    overlaps = []

    class GatedProvider(FakeProvider):
        async def fetch_reading(self, city, api_key, unit):
            active.append(city.id)
            if len(active) > len(cities):
                overlaps.append(city.id)
            await gate.wait()
            reading = await super().fetch_reading(city, api_key, unit)
            active.remove(city.id)
            return reading

    monitor = WeatherMonitor(make_state(cities), GatedProvider())

    scheduled = asyncio.create_task(monitor.poll_once())
    manual = asyncio.create_task(monitor.poll_once())
    await asyncio.sleep(0)
    assert monitor.state.is_loading is True

    gate.set()
    await scheduled
    assert monitor.state.is_loading is True
    await manual

    assert monitor.state.is_loading is False
    assert overlaps == []
    assert monitor.state.store.count("delhi") == 2

"""
Polling orchestration.

One cycle fetches every configured city concurrently, then applies the
results one city at a time in configured order:

    append -> evaluate alerts (against the history before the append)
           -> rebuild that city's daily summaries -> notify listeners

A city whose fetch fails is skipped for the cycle; its history and summaries
are left untouched.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from .aggregator import SummaryAggregator
from .alerts import AlertEngine, AlertLog
from .config import Settings
from .errors import CREDENTIAL_FAILURES, InvalidCredential, MissingCredential, ProviderError
from .metrics import fetch_failures, poll_cycles, readings_ingested
from .openweather_provider import OpenWeatherProvider, ReadingProvider
from .schemas import Alert, AlertConfig, CityInfo, CycleReport, MonitorConfig, Reading
from .store import ReadingStore

logger = logging.getLogger(__name__)


class MonitorState:
    """Everything the monitor mutates, owned by one WeatherMonitor."""

    def __init__(
        self,
        config: MonitorConfig,
        max_records_per_city: int = 100,
        max_alerts: int = 50,
        default_alert_config: Optional[AlertConfig] = None,
    ):
        self.default_alert_config = default_alert_config or AlertConfig()
        for city in config.cities:
            config.alerts.setdefault(city.id, self.default_alert_config.model_copy())
        self.config = config
        self.store = ReadingStore(max_records_per_city=max_records_per_city)
        self.aggregator = SummaryAggregator(self.store)
        self.alert_log = AlertLog(max_alerts=max_alerts)
        self.engine = AlertEngine(self.alert_log, config.temperature_unit.symbol)
        self.last_updated: Optional[float] = None
        self.is_loading = False
        self.last_report: Optional[CycleReport] = None
        self.consecutive_credential_failures = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorState":
        config = MonitorConfig(
            api_key=settings.openweather_api_key,
            update_interval=settings.update_interval_minutes,
            temperature_unit=settings.temperature_unit,
            cities=list(settings.cities),
        )
        return cls(
            config,
            max_records_per_city=settings.max_records_per_city,
            max_alerts=settings.max_alerts,
            default_alert_config=settings.default_alert_config(),
        )


class WeatherMonitor:
    def __init__(
        self,
        state: MonitorState,
        provider: ReadingProvider,
        credential_failure_limit: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.provider = provider
        self.credential_failure_limit = credential_failure_limit
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._update_callbacks: List[Callable[[Optional[str]], None]] = []
        self._cycle_lock = asyncio.Lock()
        self._cycles_in_flight = 0

    @classmethod
    def from_settings(
        cls, settings: Settings, provider: Optional[ReadingProvider] = None
    ) -> "WeatherMonitor":
        return cls(
            MonitorState.from_settings(settings),
            provider or OpenWeatherProvider.from_settings(settings),
            credential_failure_limit=settings.credential_failure_limit,
        )

    # -- notifications -------------------------------------------------------

    def on_update(self, callback: Callable[[Optional[str]], None]) -> None:
        """Register a listener called with the mutated city id (None = all cities)."""
        self._update_callbacks.append(callback)

    def _notify(self, city_id: Optional[str]) -> None:
        for callback in self._update_callbacks:
            try:
                callback(city_id)
            except Exception as exc:  # pragma: no cover - listener failures stay local
                logger.warning("Update listener failed for %s: %s", city_id, exc)

    # -- mutation ------------------------------------------------------------

    def apply_reading(self, city_id: str, reading: Reading) -> Optional[Alert]:
        state = self.state
        prior = state.store.history(city_id)
        state.store.append(city_id, reading)
        readings_ingested.inc()
        alert = state.engine.evaluate(reading, prior, state.config.alerts.get(city_id))
        state.aggregator.recompute(city_id)
        self._notify(city_id)
        return alert

    def clear_readings(self, city_id: Optional[str] = None) -> None:
        self.state.store.clear(city_id)
        if city_id:
            self.state.aggregator.recompute(city_id)
        else:
            self.state.aggregator.recompute_all()
        self._notify(city_id)

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.state.alert_log.acknowledge(alert_id)

    def clear_alerts(self) -> None:
        self.state.alert_log.clear()

    # -- polling -------------------------------------------------------------

    async def poll_once(self) -> CycleReport:
        """
        Run one polling cycle. Provider failures never escape. Overlapping
        calls (a manual refresh during a scheduled cycle) run one after the
        other; ``is_loading`` stays set until the last one finishes.
        """
        self._cycles_in_flight += 1
        self.state.is_loading = True
        try:
            async with self._cycle_lock:
                return await self._poll()
        finally:
            self._cycles_in_flight -= 1
            self.state.is_loading = self._cycles_in_flight > 0

    async def _poll(self) -> CycleReport:
        config = self.state.config
        report = CycleReport(started_at=datetime.now(timezone.utc))
        poll_cycles.inc()

        if not config.api_key:
            logger.warning("No OpenWeather API key configured; skipping poll cycle.")
            for city in config.cities:
                report.failures[city.id] = MissingCredential.kind
            fetch_failures.labels(reason=MissingCredential.kind).inc(len(config.cities))
            return self._finish(report)

        results = await asyncio.gather(
            *(
                self.provider.fetch_reading(city, config.api_key, config.temperature_unit)
                for city in config.cities
            ),
            return_exceptions=True,
        )
        for city, result in zip(config.cities, results):
            if isinstance(result, BaseException):
                report.failures[city.id] = self._record_failure(city, result)
                continue
            alert = self.apply_reading(city.id, result)
            report.updated.append(city.id)
            if alert is not None:
                report.alerts.append(alert)

        if report.updated:
            self.state.last_updated = time.time()
        return self._finish(report)

    def _record_failure(self, city: CityInfo, exc: BaseException) -> str:
        if isinstance(exc, ProviderError):
            kind = exc.kind
            if kind in CREDENTIAL_FAILURES:
                logger.error("Credential failure fetching %s: %s", city.id, exc)
            else:
                logger.warning("Fetch failed for %s (%s): %s", city.id, kind, exc)
        else:
            kind = "network_error"
            logger.error(
                "Unexpected error fetching %s", city.id, exc_info=(type(exc), exc, exc.__traceback__)
            )
        fetch_failures.labels(reason=kind).inc()
        return kind

    def _finish(self, report: CycleReport) -> CycleReport:
        report.finished_at = datetime.now(timezone.utc)
        failures = report.failures.values()
        if not report.updated and failures and all(
            kind == InvalidCredential.kind for kind in failures
        ):
            self.state.consecutive_credential_failures += 1
        elif report.updated:
            self.state.consecutive_credential_failures = 0
        self.state.last_report = report
        logger.info(
            "Poll cycle finished: %s updated, %s failed, %s alerts",
            len(report.updated),
            len(report.failures),
            len(report.alerts),
        )
        return report

    def _credentials_exhausted(self) -> bool:
        limit = self.credential_failure_limit
        return bool(limit) and self.state.consecutive_credential_failures >= limit

    async def run(self) -> None:
        """
        Poll every ``update_interval`` minutes until cancelled. The first cycle
        runs immediately when no readings exist yet and a credential is set.
        """
        immediate = self.state.store.count() == 0 and bool(self.state.config.api_key)
        while True:
            try:
                if immediate:
                    immediate = False
                else:
                    await self._sleep(self.state.config.update_interval * 60)
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:  # pragma: no cover - resilient background job
                logger.warning("Poll cycle failed: %s", exc)
            if self._credentials_exhausted():
                logger.error(
                    "Stopping polling after %s consecutive invalid-credential cycles; "
                    "update the API key to resume.",
                    self.state.consecutive_credential_failures,
                )
                break

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        if not self.state.config.api_key:
            logger.info("Polling disabled (no OpenWeather API key).")
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def reschedule(self) -> None:
        await self.stop()
        self.start()

    # -- configuration -------------------------------------------------------

    async def update_config(self, **changes) -> MonitorConfig:
        """
        Validate and apply global settings. A new credential or interval
        restarts the polling cadence.
        """
        current = self.state.config
        updated = MonitorConfig.model_validate({**current.model_dump(), **changes})
        for city in updated.cities:
            updated.alerts.setdefault(city.id, self.state.default_alert_config.model_copy())
        self.state.config = updated
        self.state.engine.unit_symbol = updated.temperature_unit.symbol

        if updated.api_key != current.api_key:
            self.state.consecutive_credential_failures = 0
        if (
            updated.api_key != current.api_key
            or updated.update_interval != current.update_interval
        ):
            await self.reschedule()
        return updated

    def update_alert_config(self, city_id: str, **changes) -> AlertConfig:
        if self.state.config.city(city_id) is None:
            raise KeyError(city_id)
        existing = self.state.config.alerts.get(city_id, self.state.default_alert_config)
        updated = AlertConfig.model_validate({**existing.model_dump(), **changes})
        self.state.config.alerts[city_id] = updated
        return updated

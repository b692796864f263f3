import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Sequence

from .metrics import alert_log_size, alerts_emitted, unacknowledged_alerts
from .schemas import Alert, AlertConfig, AlertType, Reading

logger = logging.getLogger(__name__)

MAX_ALERTS = 50


def _compare(value: float, op: str, threshold: float) -> bool:
    if op == ">":
        return value > threshold
    return value < threshold


def _run_holds(
    current: Reading,
    prior: Sequence[Reading],
    op: str,
    threshold: float,
    consecutive: int,
) -> bool:
    """
    True when the current reading and the ``consecutive - 1`` readings
    immediately before it all satisfy ``op threshold``.
    """
    if not _compare(current.temp, op, threshold):
        return False
    needed = consecutive - 1
    if len(prior) < needed:
        return False
    return all(_compare(r.temp, op, threshold) for r in prior[:needed])


def check_for_alert(
    current: Reading,
    prior: Sequence[Reading],
    config: AlertConfig,
    unit_symbol: str = "°C",
) -> Optional[Alert]:
    """
    Evaluate one new reading against a city's alert config.

    ``prior`` is the city's history before ``current`` was appended, newest
    first. Rules are checked in order (high temp, low temp, condition) and
    the first match wins.
    """
    if not config.enabled:
        return None

    city = current.city_id
    ts = current.timestamp
    n = config.consecutive_readings

    if _run_holds(current, prior, ">", config.high_temp, n):
        return Alert(
            id=f"{city}-high-temp-{ts}",
            city=city,
            timestamp=ts,
            type=AlertType.HIGH_TEMP,
            message=(
                f"High temperature alert: {current.temp:g}{unit_symbol} exceeds threshold "
                f"of {config.high_temp:g}{unit_symbol} for {n} consecutive readings"
            ),
            value=current.temp,
            threshold=config.high_temp,
        )

    if _run_holds(current, prior, "<", config.low_temp, n):
        return Alert(
            id=f"{city}-low-temp-{ts}",
            city=city,
            timestamp=ts,
            type=AlertType.LOW_TEMP,
            message=(
                f"Low temperature alert: {current.temp:g}{unit_symbol} below threshold "
                f"of {config.low_temp:g}{unit_symbol} for {n} consecutive readings"
            ),
            value=current.temp,
            threshold=config.low_temp,
        )

    if config.weather_condition and current.condition == config.weather_condition:
        return Alert(
            id=f"{city}-condition-{ts}",
            city=city,
            timestamp=ts,
            type=AlertType.WEATHER_CONDITION,
            message=f"Weather condition alert: {current.condition} condition detected",
            value=current.condition,
            threshold=config.weather_condition,
        )

    return None


class AlertLog:
    """
    Global newest-first alert log. Once full, adding an alert evicts the
    oldest one.
    """

    def __init__(self, max_alerts: int = MAX_ALERTS):
        self.max_alerts = max_alerts
        self._alerts: Deque[Alert] = deque(maxlen=max_alerts)

    def add(self, alert: Alert) -> bool:
        """Store an alert. Returns False if an alert with that id is already logged."""
        if self.get(alert.id) is not None:
            logger.debug("Alert %s already logged; skipping", alert.id)
            return False
        self._alerts.appendleft(alert)
        self._update_gauges()
        return True

    def get(self, alert_id: str) -> Optional[Alert]:
        for alert in self._alerts:
            if alert.id == alert_id:
                return alert
        return None

    def acknowledge(self, alert_id: str) -> bool:
        alert = self.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        self._update_gauges()
        return True

    def clear(self) -> None:
        self._alerts.clear()
        self._update_gauges()

    def list(self, limit: Optional[int] = None, unacknowledged_only: bool = False) -> List[Alert]:
        alerts = [a for a in self._alerts if not (unacknowledged_only and a.acknowledged)]
        if limit:
            return alerts[:limit]
        return alerts

    def unacknowledged_count(self) -> int:
        return sum(1 for a in self._alerts if not a.acknowledged)

    def __len__(self) -> int:
        return len(self._alerts)

    def _update_gauges(self) -> None:
        alert_log_size.set(len(self._alerts))
        unacknowledged_alerts.set(self.unacknowledged_count())


class AlertEngine:
    def __init__(self, log: AlertLog, unit_symbol: str = "°C"):
        self.log = log
        self.unit_symbol = unit_symbol
        self._callbacks: List[Callable[[Alert], None]] = []

    def on_alert(self, callback: Callable[[Alert], None]) -> None:
        self._callbacks.append(callback)

    def evaluate(
        self,
        current: Reading,
        prior: Sequence[Reading],
        config: Optional[AlertConfig],
    ) -> Optional[Alert]:
        """
        Check a freshly appended reading and log the alert it raises, if any.
        Returns the alert only when it is new to the log.
        """
        if config is None:
            return None
        alert = check_for_alert(current, prior, config, self.unit_symbol)
        if alert is None or not self.log.add(alert):
            return None

        alerts_emitted.labels(type=alert.type.value).inc()
        logger.info("Alert raised for %s: %s", alert.city, alert.message)
        for callback in self._callbacks:
            try:
                callback(alert)
            except Exception as exc:  # pragma: no cover - notifier failures stay local
                logger.warning("Alert callback failed for %s: %s", alert.id, exc)
        return alert

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from .metrics import summary_recomputes
from .schemas import DailySummary, Reading
from .store import ReadingStore

logger = logging.getLogger(__name__)

_ONE_DECIMAL = Decimal("0.1")


def round_one_decimal(value: float) -> float:
    """Round to 0.1, halves away from zero (2.25 -> 2.3, -2.25 -> -2.3)."""
    return float(Decimal(str(value)).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def group_by_date(records: Iterable[Reading]) -> Dict[date, List[Reading]]:
    """
    Group readings by calendar date. Both the dates and the readings within a
    date keep the order in which they were encountered.
    """
    grouped: Dict[date, List[Reading]] = {}
    for record in records:
        grouped.setdefault(record.date, []).append(record)
    return grouped


def summarize_day(records: List[Reading]) -> Optional[DailySummary]:
    """
    Build one summary from the readings of a single (city, date).
    """
    if not records:
        return None

    first = records[0]
    total_temp = 0.0
    min_temp = first.temp
    max_temp = first.temp
    total_humidity = 0.0
    total_wind = 0.0
    condition_count: Dict[str, int] = {}

    for record in records:
        total_temp += record.temp
        min_temp = min(min_temp, record.temp)
        max_temp = max(max_temp, record.temp)
        total_humidity += record.humidity
        total_wind += record.wind_speed
        condition_count[record.condition] = condition_count.get(record.condition, 0) + 1

    # dicts keep insertion order, so a strict > leaves ties with the first seen
    dominant = ""
    best = 0
    for condition, count in condition_count.items():
        if count > best:
            best = count
            dominant = condition

    n = len(records)
    return DailySummary(
        city_id=first.city_id,
        date=first.date,
        avg_temp=round_one_decimal(total_temp / n),
        min_temp=min_temp,
        max_temp=max_temp,
        dominant_condition=dominant,
        condition_count=condition_count,
        avg_humidity=round_one_decimal(total_humidity / n),
        avg_wind_speed=round_one_decimal(total_wind / n),
        records=list(records),
    )


class SummaryAggregator:
    """
    Daily summaries per city, always rebuilt in full from the store.
    """

    def __init__(self, store: ReadingStore):
        self.store = store
        self._summaries: Dict[str, Dict[date, DailySummary]] = {}

    def recompute(self, city_id: str) -> None:
        history = self.store.history(city_id)
        if not history:
            self._summaries.pop(city_id, None)
            return

        rebuilt: Dict[date, DailySummary] = {}
        for day, records in group_by_date(history).items():
            summary = summarize_day(records)
            if summary is not None:
                rebuilt[day] = summary
        self._summaries[city_id] = rebuilt
        summary_recomputes.inc()
        logger.debug("Rebuilt %s daily summaries for %s", len(rebuilt), city_id)

    def recompute_all(self) -> None:
        for city_id in set(self.store.cities()) | set(self._summaries):
            self.recompute(city_id)

    def summaries(self, city_id: str) -> Dict[date, DailySummary]:
        return dict(self._summaries.get(city_id, {}))

    def summary(self, city_id: str, day: date) -> Optional[DailySummary]:
        return self._summaries.get(city_id, {}).get(day)

    def dates(self, city_id: str) -> List[date]:
        """Summary dates for a city, newest first."""
        return sorted(self._summaries.get(city_id, {}), reverse=True)

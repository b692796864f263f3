"""
Per-city reading history.

Bounded, newest-first, in-memory. Insertion order is the only order: readings
are never re-sorted by timestamp, and once a city's history is full every
append evicts its oldest reading.
"""

import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .schemas import Reading

MAX_RECORDS_PER_CITY = 100


class ReadingStore:
    """
    Usage:
        store = ReadingStore(max_records_per_city=100)
        store.append("delhi", reading)
        recent = store.history("delhi", limit=10)
    """

    def __init__(
        self,
        max_records_per_city: int = MAX_RECORDS_PER_CITY,
        clock: Callable[[], float] = time.time,
    ):
        self.max_records_per_city = max_records_per_city
        self._clock = clock
        self._data: Dict[str, Deque[Reading]] = {}
        self.last_updated: Optional[float] = None

    def append(self, city_id: str, reading: Reading) -> None:
        """Prepend a reading, evicting the oldest one at capacity."""
        if city_id not in self._data:
            self._data[city_id] = deque(maxlen=self.max_records_per_city)
        self._data[city_id].appendleft(reading)
        self.last_updated = self._clock()

    def history(self, city_id: str, limit: Optional[int] = None) -> List[Reading]:
        """Readings for a city, newest first."""
        data = list(self._data.get(city_id, ()))
        if limit:
            return data[:limit]
        return data

    def latest(self, city_id: str) -> Optional[Reading]:
        readings = self._data.get(city_id)
        if not readings:
            return None
        return readings[0]

    def cities(self) -> List[str]:
        return list(self._data.keys())

    def count(self, city_id: Optional[str] = None) -> int:
        if city_id:
            return len(self._data.get(city_id, ()))
        return sum(len(readings) for readings in self._data.values())

    def clear(self, city_id: Optional[str] = None) -> None:
        if city_id:
            self._data.pop(city_id, None)
        else:
            self._data.clear()

    def stats(self) -> dict:
        return {
            "total_readings": self.count(),
            "cities": len(self._data),
            "per_city": {city: len(readings) for city, readings in self._data.items()},
            "last_updated": self.last_updated,
        }

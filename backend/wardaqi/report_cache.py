# backend/wardaqi/report_cache.py
import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple, Union

from .models import FullWardReport, WardAQI

logger = logging.getLogger(__name__)

CachedValue = Union[FullWardReport, List[WardAQI]]


class ReportCache:
    """
    Small process-local cache of finished ward reports (and the city overview).

    Entries expire `ttl_seconds` after insertion. When full, the oldest inserted
    entry is evicted (FIFO; reads do not refresh an entry's position).
    Not thread-safe; used from the event loop only.
    """

    def __init__(self, capacity: int = 5, ttl_seconds: float = 120.0, clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, CachedValue]]" = OrderedDict()

    def get(self, ward_id: str) -> Optional[CachedValue]:
        entry = self._entries.get(ward_id)
        if entry is None:
            return None
        expires_at, report = entry
        if self._clock() >= expires_at:
            del self._entries[ward_id]
            logger.debug(f"Report cache entry for ward '{ward_id}' expired")
            return None
        return report

    def put(self, ward_id: str, report: CachedValue):
        now = self._clock()
        self._entries.pop(ward_id, None)
        for key in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[key]
        while len(self._entries) >= self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Report cache full, evicted oldest entry '{evicted}'")
        self._entries[ward_id] = (now + self._ttl, report)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ward_id: str) -> bool:
        return self.get(ward_id) is not None

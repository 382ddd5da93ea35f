# backend/wardaqi/refresh.py
"""
Bulk narrative refresh.

The ward list is split into `slots_per_day` contiguous segments; each scheduled
slot refreshes one segment with a single batched generation call, so every
ward is covered once a day at the cost of a few requests.
"""
import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .errors import NarrativeGenerationError
from .geometry import GeometryResolver
from .models import CachedNarrative
from .narrative import FreshnessPolicy, NarrativeGenerator, build_batch_prompt, parse_batch

logger = logging.getLogger(__name__)


def segment_for_slot(slot: int, slots_per_day: int, total_wards: int) -> Tuple[int, int]:
    """(start, count) of the wards handled by `slot`; slots together cover each ward once."""
    if slots_per_day < 1:
        raise ValueError("slots_per_day must be at least 1")
    if not 0 <= slot < slots_per_day:
        raise ValueError(f"slot must be between 0 and {slots_per_day - 1}")
    size = math.ceil(total_wards / slots_per_day) if total_wards else 0
    start = min(slot * size, total_wards)
    count = min(size, total_wards - start)
    return start, count


class BulkRefreshJob:
    def __init__(
        self,
        resolver: GeometryResolver,
        store,
        generator: NarrativeGenerator,
        freshness: FreshnessPolicy,
        slots_per_day: int = 4,
        timeout_seconds: Optional[float] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._resolver = resolver
        self._store = store
        self._generator = generator
        self._freshness = freshness
        # Skip wards that will still be fresh when the next slot runs
        self._lead = timedelta(hours=24) / slots_per_day
        self._timeout = timeout_seconds
        self._now = now

    async def _due(self, ward_id: str, at: datetime) -> bool:
        cached = await self._store.get_narrative(ward_id)
        return cached is None or not self._freshness.is_fresh(cached.last_updated, at)

    async def refresh_segment(self, start: int, count: int) -> List[str]:
        """Regenerates narratives for wards[start:start+count]; returns the ward ids written."""
        ward_ids = self._resolver.ward_ids()[start:start + count]
        if not ward_ids:
            logger.info(f"Refresh segment start={start} count={count} selects no wards")
            return []

        now = self._now()
        due_flags = await asyncio.gather(*(self._due(ward_id, now + self._lead) for ward_id in ward_ids))
        due_ids = [ward_id for ward_id, due in zip(ward_ids, due_flags) if due]
        skipped = len(ward_ids) - len(due_ids)
        if skipped:
            logger.info(f"Skipping {skipped} ward(s) with narratives still fresh for the next cycle")
        if not due_ids:
            return []

        wards = [self._resolver.lookup(ward_id) for ward_id in due_ids]
        snapshots = await asyncio.gather(*(self._store.get_latest_pollutants(ward_id) for ward_id in due_ids))
        missing = sum(1 for s in snapshots if s is None)
        logger.info(f"Refreshing {len(due_ids)} ward narratives ({missing} without a pollutant snapshot)")

        try:
            text = await self._generator.generate(build_batch_prompt(zip(wards, snapshots)), self._timeout)
            narratives = parse_batch(text, due_ids)
        except NarrativeGenerationError as e:
            logger.error(f"Batch narrative generation failed for segment start={start} count={count}: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error in batch generation for segment start={start} count={count}: {e}", exc_info=True)
            return []

        if not narratives:
            logger.warning(f"Batch response for segment start={start} count={count} contained no usable analyses")
            return []
        absent = [ward_id for ward_id in due_ids if ward_id not in narratives]
        if absent:
            logger.info(f"{len(absent)} ward(s) missing from batch response, left for the next cycle: {', '.join(absent)}")

        written_at = self._now()
        records = [
            CachedNarrative(ward_id=ward_id, narrative=narrative, last_updated=written_at)
            for ward_id, narrative in narratives.items()
        ]
        if not await self._store.bulk_upsert_narratives(records):
            logger.error(f"Bulk upsert of {len(records)} narratives failed for segment start={start} count={count}")
            return []
        logger.info(f"Refreshed {len(records)}/{len(ward_ids)} ward narratives for segment start={start} count={count}")
        return [r.ward_id for r in records]

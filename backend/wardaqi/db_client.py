# backend/wardaqi/db_client.py
"""
InfluxDB-backed durable store.

ward_narratives   one record per ward (tag ward_id). Every write uses the same
                  point timestamp, so writing a ward again replaces its record.
ward_pollutants   timestamped pollutant snapshots per ward (tag ward_id).

The influxdb-client API is blocking; the async methods offload it to the
default thread-pool executor.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.exceptions import InfluxDBError
from influxdb_client.client.write_api import SYNCHRONOUS
from pydantic import ValidationError

from .config import Settings
from .models import POLLUTANT_FIELDS, CachedNarrative, NarrativeAnalysis, PollutantReading

logger = logging.getLogger(__name__)

NARRATIVE_MEASUREMENT = "ward_narratives"
POLLUTANT_MEASUREMENT = "ward_pollutants"
# Fixed point time for narrative records (upsert semantics)
NARRATIVE_RECORD_TIME = datetime(2000, 1, 1, tzinfo=timezone.utc)


def _log_influx_error(action: str, e: InfluxDBError):
    logger.error(f"InfluxDB Error {action}: {e}", exc_info=True)
    if hasattr(e, 'response') and e.response is not None and hasattr(e.response, 'data'):
        body = e.response.data.decode() if isinstance(e.response.data, bytes) else str(e.response.data)
        logger.error(f"InfluxDB Response Body: {body}")


class InfluxStore:
    def __init__(self, settings: Settings):
        self._bucket = settings.influxdb_bucket
        self._org = settings.influxdb_org
        self._lookback = settings.pollutant_lookback
        logger.info(f"Attempting to connect to InfluxDB at {settings.influxdb_url} in org '{self._org}'")
        try:
            self._client = InfluxDBClient(url=settings.influxdb_url, token=settings.influxdb_token, org=self._org, timeout=20_000)
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
            self._query_api = self._client.query_api()
            logger.info("InfluxDB client initialized.")
        except Exception as e:
            logger.error(f"Failed to initialize InfluxDB client: {e}", exc_info=True)
            self._client = None
            self._write_api = None
            self._query_api = None

    def close(self):
        if self._client:
            logger.info("Closing InfluxDB client...")
            self._client.close()
            self._client = None
            self._write_api = None
            self._query_api = None
            logger.info("InfluxDB client closed.")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # --- Blocking helpers ---

    def _ping(self) -> bool:
        if not self._client:
            return False
        try:
            return bool(self._client.ping())
        except Exception as e:
            logger.warning(f"InfluxDB ping failed: {e}")
            return False

    def _write(self, points: List[Point], action: str) -> bool:
        if not self._write_api:
            logger.error(f"InfluxDB write_api not available for {action}.")
            return False
        try:
            self._write_api.write(bucket=self._bucket, org=self._org, record=points)
            logger.debug(f"Wrote {len(points)} point(s) for {action}.")
            return True
        except InfluxDBError as e:
            _log_influx_error(f"writing {action}", e)
            return False
        except Exception as e:
            logger.error(f"Generic error writing {action}: {e}", exc_info=True)
            return False

    def _read_narrative(self, ward_id: str) -> Optional[CachedNarrative]:
        if not self._query_api:
            logger.error("InfluxDB query_api not available for narrative lookup.")
            return None

        flux_query = f'''
            from(bucket: "{self._bucket}")
              |> range(start: 0)
              |> filter(fn: (r) => r["_measurement"] == "{NARRATIVE_MEASUREMENT}")
              |> filter(fn: (r) => r["ward_id"] == params.ward_id)
              |> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")
        '''
        try:
            tables = self._query_api.query(query=flux_query, org=self._org, params={"ward_id": ward_id})
        except InfluxDBError as e:
            _log_influx_error(f"reading narrative for ward '{ward_id}'", e)
            return None
        except Exception as e:
            logger.error(f"Generic error reading narrative for ward '{ward_id}': {e}", exc_info=True)
            return None

        for table in tables:
            for record in table.records:
                try:
                    narrative = NarrativeAnalysis.model_validate(json.loads(record.values["narrative"]))
                    last_updated = datetime.fromtimestamp(int(record.values["last_updated"]) / 1000, tz=timezone.utc)
                    return CachedNarrative(ward_id=ward_id, narrative=narrative, last_updated=last_updated)
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.error(f"Corrupt narrative record for ward '{ward_id}': {e}")
                    return None
        return None

    def _read_latest_pollutants(self, ward_id: str) -> Optional[PollutantReading]:
        if not self._query_api:
            logger.error("InfluxDB query_api not available for pollutant lookup.")
            return None

        flux_query = f'''
            from(bucket: "{self._bucket}")
              |> range(start: -{self._lookback})
              |> filter(fn: (r) => r["_measurement"] == "{POLLUTANT_MEASUREMENT}")
              |> filter(fn: (r) => r["ward_id"] == params.ward_id)
              |> last()
        '''
        try:
            tables = self._query_api.query(query=flux_query, org=self._org, params={"ward_id": ward_id})
        except InfluxDBError as e:
            _log_influx_error(f"reading pollutants for ward '{ward_id}'", e)
            return None
        except Exception as e:
            logger.error(f"Generic error reading pollutants for ward '{ward_id}': {e}", exc_info=True)
            return None

        # last() yields one table per field
        values = {}
        for table in tables:
            for record in table.records:
                field_name = record.get_field()
                if field_name in POLLUTANT_FIELDS and record.get_value() is not None:
                    values[field_name] = float(record.get_value())
        if not values:
            logger.info(f"No pollutant snapshot within {self._lookback} for ward '{ward_id}'.")
            return None
        return PollutantReading(**values)

    # --- Point construction ---

    @staticmethod
    def _narrative_point(ward_id: str, narrative: NarrativeAnalysis, timestamp: datetime) -> Point:
        return (
            Point(NARRATIVE_MEASUREMENT)
            .tag("ward_id", ward_id)
            .field("narrative", json.dumps(narrative.to_json_dict(), ensure_ascii=False))
            .field("last_updated", int(timestamp.timestamp() * 1000))
            .time(NARRATIVE_RECORD_TIME, WritePrecision.S)
        )

    # --- Async interface used by the services ---

    async def ping(self) -> bool:
        return await self._run(self._ping)

    async def get_narrative(self, ward_id: str) -> Optional[CachedNarrative]:
        return await self._run(self._read_narrative, ward_id)

    async def upsert_narrative(self, ward_id: str, narrative: NarrativeAnalysis, timestamp: datetime) -> bool:
        point = self._narrative_point(ward_id, narrative, timestamp)
        return await self._run(self._write, [point], f"narrative of ward '{ward_id}'")

    async def bulk_upsert_narratives(self, records: List[CachedNarrative]) -> bool:
        if not records:
            return True
        points = [self._narrative_point(r.ward_id, r.narrative, r.last_updated) for r in records]
        return await self._run(self._write, points, f"{len(points)} ward narratives")

    async def get_latest_pollutants(self, ward_id: str) -> Optional[PollutantReading]:
        return await self._run(self._read_latest_pollutants, ward_id)

    async def write_pollutant_snapshot(self, ward_id: str, reading: PollutantReading, timestamp: Optional[datetime] = None) -> bool:
        fields = reading.present()
        if not fields:
            logger.warning(f"Skipping pollutant snapshot for ward '{ward_id}' as no pollutant fields were provided.")
            return True
        timestamp = (timestamp or datetime.now(timezone.utc)).astimezone(timezone.utc)
        point = Point(POLLUTANT_MEASUREMENT).tag("ward_id", ward_id).time(timestamp, WritePrecision.MS)
        for key, value in fields.items():
            point.field(key, float(value))
        return await self._run(self._write, [point], f"pollutant snapshot of ward '{ward_id}'")

# backend/wardaqi/geometry.py
"""
Ward boundary lookup. The GeoJSON file is parsed once at startup into
(ward_id -> WardIdentity); the point queried for each ward is the area
centroid of its boundary, or an interior point when the centroid falls
outside a concave ward.
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from shapely.errors import GEOSException
from shapely.geometry import shape

from .models import WardIdentity, WardSummary

logger = logging.getLogger(__name__)

BUNDLED_WARDS_FILE = Path(__file__).parent / "data" / "wards.geojson"
WARD_ID_KEYS = ("ward_id", "Ward_No", "WARD_NO")
WARD_NAME_KEYS = ("ward_name", "Ward_Name", "WARD_NAME", "name")
AREA_TYPES = ("Polygon", "MultiPolygon")


def _first_property(properties: dict, keys) -> Optional[str]:
    for key in keys:
        value = properties.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def _centroid(geometry: Optional[dict]) -> Optional[tuple]:
    if not geometry or geometry.get("type") not in AREA_TYPES:
        return None
    try:
        boundary = shape(geometry)
    except (GEOSException, ValueError, TypeError, IndexError) as e:
        logger.warning(f"Unreadable ward geometry: {e}")
        return None
    if boundary.is_empty:
        return None
    point = boundary.centroid
    if not boundary.contains(point):
        point = boundary.representative_point()
    return point.y, point.x


class GeometryResolver:
    def __init__(self, wards: Dict[str, WardIdentity]):
        # dict preserves file order, which is the canonical ward ordering
        self._wards = wards

    @classmethod
    def from_geojson(cls, path: Optional[str] = None) -> "GeometryResolver":
        source = Path(path) if path else BUNDLED_WARDS_FILE
        logger.info(f"Loading ward boundaries from {source}")
        with open(source, encoding="utf-8") as f:
            collection = json.load(f)

        wards: Dict[str, WardIdentity] = {}
        for feature in collection.get("features", []):
            properties = feature.get("properties") or {}
            ward_id = _first_property(properties, WARD_ID_KEYS)
            centroid = _centroid(feature.get("geometry"))
            if ward_id is None or centroid is None:
                logger.warning(f"Skipping ward feature without id or geometry: {properties}")
                continue
            if ward_id in wards:
                logger.warning(f"Duplicate ward id '{ward_id}' in boundary file, keeping the first")
                continue
            lat, lon = centroid
            wards[ward_id] = WardIdentity(
                ward_id=ward_id,
                ward_name=_first_property(properties, WARD_NAME_KEYS) or ward_id,
                latitude=round(lat, 6),
                longitude=round(lon, 6),
            )
        logger.info(f"Loaded {len(wards)} wards.")
        return cls(wards)

    def lookup(self, ward_id: str) -> Optional[WardIdentity]:
        return self._wards.get(ward_id)

    def ward_ids(self) -> List[str]:
        return list(self._wards)

    def summaries(self) -> List[WardSummary]:
        return [WardSummary(ward_id=w.ward_id, ward_name=w.ward_name) for w in self._wards.values()]

    def __len__(self) -> int:
        return len(self._wards)

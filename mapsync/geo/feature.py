"""
Feature data model.

A Feature is one named geographic point.  Point features are the markers
that get clustered; group features are the label markers for an external
group (district / region) and are never clustered.

Features arrive from whatever data source the host uses and are normalised
to this shape at the Feature Store boundary.  A GeoJSON FeatureCollection
of ``Point`` geometries is the common case:

    {"type": "Feature",
     "geometry": {"type": "Point", "coordinates": [35.2, 31.9]},
     "properties": {"name": "Beit Ummar", "id": "loc-12", "group": "Hebron"}}

Example
-------
    features = features_from_geojson(collection)
    store.replace(features)
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

log = logging.getLogger(__name__)

Coordinate = Tuple[float, float]    # (lon, lat)
ScreenPoint = Tuple[float, float]   # (x, y) in viewport pixels


class FeatureKind(Enum):
    POINT = "point"
    GROUP = "group"


@dataclass(frozen=True)
class Feature:
    """One named point, optionally a member of an external group."""

    feature_id: str
    coordinate: Coordinate
    name: str
    group_key: Optional[str] = None
    kind: FeatureKind = FeatureKind.POINT

    @property
    def lon(self) -> float:
        return self.coordinate[0]

    @property
    def lat(self) -> float:
        return self.coordinate[1]

    @property
    def has_valid_coordinate(self) -> bool:
        lon, lat = self.coordinate
        return (
            math.isfinite(lon) and math.isfinite(lat)
            and -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0
        )


@dataclass(frozen=True)
class ProjectedPoint:
    """A feature's screen position for the current frame only."""

    feature_id: str
    screen: ScreenPoint

    @property
    def is_valid(self) -> bool:
        return math.isfinite(self.screen[0]) and math.isfinite(self.screen[1])


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def feature_from_dict(data: Dict, index: int = 0) -> Optional[Feature]:
    """Normalise one GeoJSON-like feature dict.

    Returns None when the entry carries no coordinate at all.  Entries with
    unparsable numbers keep NaN coordinates; the clustering pass excludes
    them later.
    """
    props = data.get("properties") or {}
    geom = data.get("geometry") or {}
    coords = geom.get("coordinates")
    if coords is None and "lon" in data and "lat" in data:
        coords = (data["lon"], data["lat"])
    if not coords or len(coords) < 2:
        log.warning("Skipping feature #%d (%s): no coordinate",
                    index, props.get("name", "?"))
        return None

    kind_raw = str(props.get("kind") or data.get("kind") or "point").lower()
    try:
        kind = FeatureKind(kind_raw)
    except ValueError:
        log.warning("Feature #%d has unknown kind %r, treating as point", index, kind_raw)
        kind = FeatureKind.POINT

    group_key = props.get("group") or props.get("district") or data.get("group_key")
    feature_id = props.get("id") or data.get("id") or f"location-{index}"
    return Feature(
        feature_id=str(feature_id),
        coordinate=(_to_float(coords[0]), _to_float(coords[1])),
        name=str(props.get("name") or data.get("name") or "").strip(),
        group_key=str(group_key) if group_key else None,
        kind=kind,
    )


def features_from_geojson(collection: Dict) -> List[Feature]:
    """Normalise a GeoJSON FeatureCollection to a list of Features."""
    raw = collection.get("features") or []
    features: List[Feature] = []
    for i, item in enumerate(raw):
        feature = feature_from_dict(item, index=i)
        if feature is not None:
            features.append(feature)
    log.info("Normalised %d/%d features from GeoJSON", len(features), len(raw))
    return features


def features_to_geojson(features: Iterable[Feature]) -> Dict:
    """Export features as a GeoJSON FeatureCollection for debugging."""
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {
                    "id": f.feature_id,
                    "name": f.name,
                    "group": f.group_key,
                    "kind": f.kind.value,
                },
                "geometry": {"type": "Point", "coordinates": list(f.coordinate)},
            }
            for f in features
        ],
    }

"""
Feature Store — the full, unfiltered set of loaded features.

Read-many, write-rare.  A reload builds a complete new snapshot (ordered
tuple + id index + group index) and swaps it in with one assignment, so a
reader never observes a half-populated store.  Filtering never edits the
store; it only derives subsets from it.

Usage
-----
    store = FeatureStore()
    store.replace(features)
    coords = store.coordinates_for({"loc-1", "loc-7"})
    members = store.group_members("Hebron")
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .feature import Coordinate, Feature, FeatureKind

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    features: Tuple[Feature, ...] = ()
    by_id: Dict[str, Feature] = field(default_factory=dict)
    by_group: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    generation: int = 0


class FeatureStore:
    """Immutable-snapshot store of point and group features."""

    def __init__(self, features: Optional[Iterable[Feature]] = None):
        self._snap = _Snapshot()
        if features is not None:
            self.replace(features)

    # ── Write (wholesale only) ───────────────────────────────────────

    def replace(self, features: Iterable[Feature]) -> int:
        """Replace the whole collection.  Returns the new generation number."""
        ordered: List[Feature] = []
        by_id: Dict[str, Feature] = {}
        by_group: Dict[str, List[str]] = {}
        for f in features:
            if f.feature_id in by_id:
                log.warning("Duplicate feature id %s (%s) ignored", f.feature_id, f.name)
                continue
            ordered.append(f)
            by_id[f.feature_id] = f
            if f.group_key and f.kind is FeatureKind.POINT:
                by_group.setdefault(f.group_key, []).append(f.feature_id)

        snap = _Snapshot(
            features=tuple(ordered),
            by_id=by_id,
            by_group={k: tuple(v) for k, v in by_group.items()},
            generation=self._snap.generation + 1,
        )
        self._snap = snap
        log.info("FeatureStore loaded %d features (%d groups), generation %d",
                 len(snap.features), len(snap.by_group), snap.generation)
        return snap.generation

    # ── Queries ─────────────────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._snap.generation

    def __len__(self) -> int:
        return len(self._snap.features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._snap.features)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._snap.by_id

    def all(self) -> Tuple[Feature, ...]:
        return self._snap.features

    def get(self, feature_id: str) -> Optional[Feature]:
        return self._snap.by_id.get(feature_id)

    def ids(self) -> Set[str]:
        return set(self._snap.by_id)

    def points(self) -> List[Feature]:
        """Point features in store order."""
        return [f for f in self._snap.features if f.kind is FeatureKind.POINT]

    def group_labels(self) -> List[Feature]:
        return [f for f in self._snap.features if f.kind is FeatureKind.GROUP]

    def group_members(self, group_key: str) -> Tuple[str, ...]:
        return self._snap.by_group.get(group_key, ())

    def groups(self) -> List[str]:
        return list(self._snap.by_group)

    def coordinates_for(self, feature_ids: Iterable[str]) -> List[Coordinate]:
        """Valid coordinates of the given ids, in store order."""
        wanted = set(feature_ids)
        coords: List[Coordinate] = []
        for f in self._snap.features:
            if f.feature_id not in wanted:
                continue
            if not f.has_valid_coordinate:
                log.warning("Feature %s (%s) has invalid coordinate %s, skipped",
                            f.feature_id, f.name, f.coordinate)
                continue
            coords.append(f.coordinate)
        return coords

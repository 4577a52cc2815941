"""
Screen-space marker clustering with stable cluster identities.

Clustering pass
───────────────
  1. Project every eligible point feature for the *current* frame.  Points
     that come back NaN/inf (or whose projection raises) are excluded and
     logged; the pass carries on for the rest.
  2. Walk the points in store order.  Each point not yet consumed seeds a
     candidate; every other unconsumed point closer than ``T`` pixels to
     the **seed** joins it.  Distances are seed-relative, never measured
     against a running centroid.
  3. Candidates with more than one member become clusters (mean screen
     centroid, unprojected geo centroid); the rest are singletons.
  4. Each new cluster claims the nearest unclaimed previous cluster within
     ``T`` and inherits its id.  Unmatched new clusters get fresh ids;
     unclaimed previous clusters are retired.

``cluster_points`` is the pure function (no Qt, no projector caching).
``ClusteringEngine`` owns the live cluster set, the zoom eligibility gate
and the cancelable fade-out of retired clusters.

Usage
-----
    engine = ClusteringEngine(projector, config)
    engine.clusters_updated.connect(render)
    result = engine.recompute(store.points())
"""
from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np
from PyQt5 import QtCore

from ..config import EngineConfig
from ..geo.feature import Coordinate, Feature, ProjectedPoint, ScreenPoint
from ..geo.projector import GeometryProjector
from .debounce import DebounceSlots

log = logging.getLogger(__name__)


@dataclass
class Cluster:
    """Two or more features merged into one on-screen marker."""

    cluster_id: str
    member_ids: FrozenSet[str]
    screen_centroid: ScreenPoint
    geo_centroid: Coordinate

    def __post_init__(self) -> None:
        if len(self.member_ids) < 2:
            raise ValueError(
                f"Cluster {self.cluster_id} needs at least 2 members, "
                f"got {len(self.member_ids)}"
            )

    @property
    def count(self) -> int:
        return len(self.member_ids)


@dataclass
class ClusterResult:
    """Outcome of one clustering pass."""
    clusters: List[Cluster] = field(default_factory=list)
    singletons: List[str] = field(default_factory=list)
    retired: List[Cluster] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    hidden: bool = False


def _distance(a: ScreenPoint, b: ScreenPoint) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def cluster_points(
    points: Sequence[ProjectedPoint],
    threshold: float,
    previous: Sequence[Cluster],
    unproject: Callable[[ScreenPoint], Coordinate],
    new_id: Callable[[], str],
) -> ClusterResult:
    """Partition *points* into clusters and singletons.

    *points* must be in store order; the output is deterministic for a
    fixed order.  *previous* clusters are matched by screen centroid.
    """
    result = ClusterResult()

    valid: List[ProjectedPoint] = []
    for p in points:
        if p.is_valid:
            valid.append(p)
        else:
            result.excluded.append(p.feature_id)
            log.warning("Feature %s has no valid screen position %s, excluded",
                        p.feature_id, p.screen)

    if not valid:
        result.retired = list(previous)
        return result

    xy = np.array([p.screen for p in valid], dtype=float)
    consumed = np.zeros(len(valid), dtype=bool)
    candidates: List[Tuple[FrozenSet[str], ScreenPoint, Coordinate]] = []

    for i in range(len(valid)):
        if consumed[i]:
            continue
        seed = xy[i]
        dist = np.hypot(xy[:, 0] - seed[0], xy[:, 1] - seed[1])
        near = (~consumed) & (dist < threshold)
        near[i] = True
        members = np.flatnonzero(near)

        if len(members) == 1:
            result.singletons.append(valid[i].feature_id)
            consumed[i] = True
            continue

        consumed[members] = True
        cx, cy = xy[members].mean(axis=0)
        centroid = (float(cx), float(cy))
        try:
            geo = tuple(unproject(centroid))
        except Exception:
            log.exception("unproject failed for cluster centroid %s", centroid)
            geo = (math.nan, math.nan)
        candidates.append((
            frozenset(valid[m].feature_id for m in members),
            centroid,
            geo,
        ))

    # Identity carry-over: nearest unclaimed previous cluster within threshold
    claimed: Dict[str, bool] = {}
    for member_ids, centroid, geo in candidates:
        best: Optional[Cluster] = None
        best_dist = threshold
        for old in previous:
            if old.cluster_id in claimed:
                continue
            d = _distance(old.screen_centroid, centroid)
            if d < best_dist:
                best, best_dist = old, d

        if best is not None:
            claimed[best.cluster_id] = True
            cluster_id = best.cluster_id
            result.updated.append(cluster_id)
        else:
            cluster_id = new_id()
            result.created.append(cluster_id)

        result.clusters.append(Cluster(
            cluster_id=cluster_id,
            member_ids=member_ids,
            screen_centroid=centroid,
            geo_centroid=geo,
        ))

    result.retired = [c for c in previous if c.cluster_id not in claimed]
    return result


class ClusteringEngine(QtCore.QObject):
    """Owns the live cluster set.

    Signals
    -------
    clusters_updated(list[Cluster], list[str])
        New cluster set and singleton feature ids after each pass.
    cluster_retired(str)
        A retired cluster finished its fade-out and should be removed.
    visibility_changed(bool)
        Markers crossed the minimum-zoom eligibility gate.
    """

    clusters_updated = QtCore.pyqtSignal(object, object)
    cluster_retired = QtCore.pyqtSignal(str)
    visibility_changed = QtCore.pyqtSignal(bool)

    def __init__(
        self,
        projector: GeometryProjector,
        config: Optional[EngineConfig] = None,
        slots: Optional[DebounceSlots] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._projector = projector
        self._cfg = config if config is not None else EngineConfig()
        self._slots = slots if slots is not None else DebounceSlots(self)
        self._ids = itertools.count(1)

        self._clusters: Dict[str, Cluster] = {}
        self._retiring: Dict[str, Cluster] = {}
        self._singletons: List[str] = []
        self._hidden = True

    # ── Read access ─────────────────────────────────────────────────

    @property
    def clusters(self) -> Tuple[Cluster, ...]:
        return tuple(self._clusters.values())

    @property
    def singletons(self) -> Tuple[str, ...]:
        return tuple(self._singletons)

    @property
    def retiring(self) -> Tuple[str, ...]:
        return tuple(self._retiring)

    @property
    def markers_hidden(self) -> bool:
        return self._hidden

    def cluster(self, cluster_id: str) -> Optional[Cluster]:
        return self._clusters.get(cluster_id)

    def cluster_of(self, feature_id: str) -> Optional[Cluster]:
        for c in self._clusters.values():
            if feature_id in c.member_ids:
                return c
        return None

    # ── Passes ─────────────────────────────────────────────────────

    def markers_eligible(self) -> bool:
        """Minimum-zoom gate for the current view."""
        width, _ = self._projector.viewport_size()
        return self._projector.current_zoom() >= self._cfg.min_marker_zoom(width)

    def recompute(self, features: Sequence[Feature]) -> ClusterResult:
        """Run one clustering pass over the filter-eligible *features*."""
        if not self.markers_eligible():
            if not self._hidden:
                log.info("Zoom %.2f below marker threshold, hiding all markers",
                         self._projector.current_zoom())
                self.hide_all()
            return ClusterResult(hidden=True)

        if self._hidden:
            self._hidden = False
            self.visibility_changed.emit(True)

        points = [ProjectedPoint(f.feature_id, self._project(f)) for f in features]
        previous = [self._refresh_screen(c) for c in self._clusters.values()]
        result = cluster_points(
            points,
            self._cfg.merge_threshold_px,
            previous,
            self._unproject,
            self._new_id,
        )
        self._apply(result)
        log.debug(
            "Clustering: %d points → %d clusters (%d new, %d kept, %d retired), "
            "%d singletons, %d excluded",
            len(points), len(result.clusters), len(result.created),
            len(result.updated), len(result.retired), len(result.singletons),
            len(result.excluded),
        )
        return result

    def hide_all(self) -> None:
        """Fade out every cluster and hide all markers."""
        self._retire(list(self._clusters.values()))
        self._clusters = {}
        self._singletons = []
        was_hidden = self._hidden
        self._hidden = True
        self.clusters_updated.emit([], [])
        if not was_hidden:
            self.visibility_changed.emit(False)

    def clear(self) -> None:
        """Drop every cluster immediately, cancelling pending fade-outs."""
        released = sorted(fid for c in self._clusters.values() for fid in c.member_ids)
        removed = list(self._clusters) + list(self._retiring)
        self._slots.cancel_prefix("retire:")
        self._clusters = {}
        self._retiring = {}
        for cid in removed:
            self.cluster_retired.emit(cid)
        if removed:
            # former members show as plain markers until the next pass
            self._singletons = self._singletons + released
            log.debug("Cleared %d clusters", len(removed))
            self.clusters_updated.emit([], list(self._singletons))

    def reset(self) -> None:
        """Forget all state (used on a full data reload)."""
        self.clear()
        self._singletons = []
        self._ids = itertools.count(1)

    # ── Internals ──────────────────────────────────────────────────

    def _new_id(self) -> str:
        return f"cluster-{next(self._ids)}"

    def _project(self, feature: Feature) -> ScreenPoint:
        try:
            x, y = self._projector.project(feature.coordinate)
            return (float(x), float(y))
        except Exception as exc:
            log.warning("Projection failed for %s (%s): %s",
                        feature.feature_id, feature.name, exc)
            return (math.nan, math.nan)

    def _unproject(self, point: ScreenPoint) -> Coordinate:
        return self._projector.unproject(point)

    def _refresh_screen(self, cluster: Cluster) -> Cluster:
        """Previous cluster with its centroid re-projected for this frame."""
        lon, lat = cluster.geo_centroid
        if not (math.isfinite(lon) and math.isfinite(lat)):
            return cluster
        try:
            screen = self._projector.project(cluster.geo_centroid)
        except Exception:
            return cluster
        if not (math.isfinite(screen[0]) and math.isfinite(screen[1])):
            return cluster
        return Cluster(cluster.cluster_id, cluster.member_ids, tuple(screen), cluster.geo_centroid)

    def _apply(self, result: ClusterResult) -> None:
        kept: Dict[str, Cluster] = {}
        for new in result.clusters:
            old = self._clusters.get(new.cluster_id)
            if old is not None:
                # update in place so the rendered marker keeps its identity
                old.member_ids = new.member_ids
                old.screen_centroid = new.screen_centroid
                old.geo_centroid = new.geo_centroid
                kept[old.cluster_id] = old
            else:
                kept[new.cluster_id] = new
        result.clusters = list(kept.values())
        self._retire(result.retired)
        self._clusters = kept
        self._singletons = list(result.singletons)
        self.clusters_updated.emit(list(kept.values()), list(result.singletons))

    def _retire(self, clusters: Sequence[Cluster]) -> None:
        for c in clusters:
            self._retiring[c.cluster_id] = c
            self._slots.schedule(
                f"retire:{c.cluster_id}",
                self._cfg.fade_out_ms,
                lambda cid=c.cluster_id: self._remove(cid),
            )

    def _remove(self, cluster_id: str) -> None:
        if self._retiring.pop(cluster_id, None) is not None:
            self.cluster_retired.emit(cluster_id)

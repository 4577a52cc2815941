"""
MapEngine — the public facade the host page talks to.

Wires the Feature Store, clustering, view synchronizer, interaction gate
and debounce slots together, and routes every external notification
(view settle, filter change, marker / cluster activation, user gesture)
through the gate before reacting.

Self-trigger suppression
────────────────────────
  • view settle while an engine move is in flight → ignored here; the
    move's initiator schedules its own recompute.
  • filter change while a marker navigation is current → dropped; the
    marker click already drove selection and camera.
  • filter change while a user gesture is current → postponed until the
    gesture window runs out.

Usage
-----
    engine = MapEngine(projector, filter_source, selection_sink, config)
    engine.on_clusters_updated(render_markers)
    engine.load_features(features)
    engine.start()
    ...
    handler = engine.bind_marker("loc-12")
    if handler:
        button.clicked.connect(handler)
"""
from __future__ import annotations

import logging
import math
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from PyQt5 import QtCore

from ..config import EngineConfig
from ..geo.bounds import Bounds
from ..geo.feature import Feature, FeatureKind
from ..geo.feature_store import FeatureStore
from ..geo.projector import GeometryProjector, ViewState
from .clustering import ClusteringEngine, ClusterResult
from .debounce import SLOT_FILTER, SLOT_REFRESH, SLOT_VIEWPORT, DebounceSlots
from .filters import FilterPoller, has_change_signal, read_filter
from .gate import ENGINE_MOVES, InteractionGate, InteractionReason
from .sync import ReframeTrigger, ViewSynchronizer

log = logging.getLogger(__name__)


class MapEngine(QtCore.QObject):
    """Clustering and view-synchronization engine.

    Signals
    -------
    clusters_updated(list[Cluster], list[str])
        Current clusters and singleton feature ids after every pass.
    group_labels_updated(list[Feature])
        Group label features that should be visible at the current zoom.
    """

    clusters_updated = QtCore.pyqtSignal(object, object)
    group_labels_updated = QtCore.pyqtSignal(object)

    def __init__(
        self,
        projector: GeometryProjector,
        filter_source,
        selection_sink=None,
        config: Optional[EngineConfig] = None,
        store: Optional[FeatureStore] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._cfg = config if config is not None else EngineConfig()
        self._projector = projector
        self._filter_source = filter_source
        self._sink = selection_sink

        self.store = store if store is not None else FeatureStore()
        self.slots = DebounceSlots(self)
        self.gate = InteractionGate(self._cfg, self)
        self.clustering = ClusteringEngine(projector, self._cfg, self.slots, self)
        self.sync = ViewSynchronizer(
            projector, self.store, filter_source, self.clustering,
            self.gate, self.slots, self.recompute, self._cfg, self,
        )

        self._bound: Set[str] = set()
        self._last_activation: Optional[Tuple[str, float]] = None
        self._poller: Optional[FilterPoller] = None
        self._started = False

        self.clustering.clusters_updated.connect(self.clusters_updated)
        self.clustering.cluster_retired.connect(self._bound.discard)

    @property
    def config(self) -> EngineConfig:
        return self._cfg

    @property
    def started(self) -> bool:
        return self._started

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        """Hook up change notifications and run the initial-load reconcile."""
        if self._started:
            return
        self._started = True
        self._projector.view_settled.connect(self._on_view_settled)

        if has_change_signal(self._filter_source):
            self._filter_source.filter_changed.connect(self._on_filter_changed)
        else:
            self._poller = FilterPoller(
                self._filter_source,
                self._cfg.filter_poll_ms,
                self._cfg.filter_poll_floor_ms,
                self,
            )
            self._poller.filter_changed.connect(self._on_filter_changed)
            self._poller.start()

        log.info("MapEngine started with %d features", len(self.store))
        self.sync.reconcile(ReframeTrigger.INITIAL_LOAD)

    def shutdown(self) -> None:
        """Cancel every pending timer and disconnect from collaborators."""
        if not self._started:
            return
        self._started = False
        self.slots.cancel_all()
        self.gate.clear()
        try:
            self._projector.view_settled.disconnect(self._on_view_settled)
        except TypeError:
            pass
        if self._poller is not None:
            self._poller.stop()
            self._poller.filter_changed.disconnect(self._on_filter_changed)
            self._poller = None
        elif has_change_signal(self._filter_source):
            try:
                self._filter_source.filter_changed.disconnect(self._on_filter_changed)
            except TypeError:
                pass
        log.info("MapEngine stopped")

    # ── Data ───────────────────────────────────────────────────────

    def load_features(self, features: Iterable[Feature]) -> int:
        """Replace the whole feature set and reset cluster state."""
        generation = self.store.replace(features)
        self.clustering.reset()
        self._bound.clear()
        self._last_activation = None
        if self._started:
            self.slots.schedule(SLOT_VIEWPORT, self._cfg.viewport_debounce_ms, self.recompute)
        return generation

    def on_clusters_updated(self, callback: Callable[[list, list], None]) -> Callable:
        """Register a rendering hook ``callback(clusters, singletons)``."""
        def deliver(clusters, singletons):
            try:
                callback(clusters, singletons)
            except Exception:
                log.exception("clusters_updated callback failed")

        self.clusters_updated.connect(deliver)
        return deliver

    def eligible_features(self) -> List[Feature]:
        """Point features that pass the current filter, in store order."""
        snapshot = read_filter(self._filter_source)
        return [f for f in self.store.points() if snapshot.admits(f.feature_id)]

    def visible_group_labels(self) -> List[Feature]:
        if self._projector.current_zoom() > self._cfg.group_label_min_zoom:
            return self.store.group_labels()
        return []

    # ── Recompute ──────────────────────────────────────────────────

    def recompute(self) -> Optional[ClusterResult]:
        """One clustering pass for the current view, unless an engine move is animating."""
        if self.gate.is_active(*ENGINE_MOVES) and self._camera_animating():
            log.debug("Recompute skipped, %s move still animating", self.gate.reason.value)
            return None
        result = self.clustering.recompute(self.eligible_features())
        self.group_labels_updated.emit(self.visible_group_labels())
        return result

    def _camera_animating(self) -> bool:
        try:
            return bool(self._projector.view_state().is_animating)
        except Exception:
            log.exception("view_state failed")
            return False

    def _on_view_settled(self, state: ViewState) -> None:
        if self.gate.is_active(*ENGINE_MOVES):
            log.debug("View settle during %s, left to its initiator", self.gate.reason.value)
            return
        self.slots.schedule(SLOT_VIEWPORT, self._cfg.viewport_debounce_ms, self.recompute)

    # ── Reframe / filter ───────────────────────────────────────────

    def request_reframe(self, trigger: ReframeTrigger = ReframeTrigger.EXPLICIT_REFRESH_REQUEST) -> None:
        """Explicit refresh (or URL-driven initial filter), coalesced."""
        self.slots.schedule(
            SLOT_REFRESH, self._cfg.refresh_debounce_ms,
            lambda: self.sync.reconcile(trigger),
        )

    def _on_filter_changed(self, *args) -> None:
        if self.gate.is_active(InteractionReason.MARKER_NAVIGATION):
            log.debug("Filter change from marker navigation ignored")
            return
        self.slots.schedule(SLOT_FILTER, self._cfg.filter_debounce_ms, self._handle_filter_change)

    def _handle_filter_change(self) -> None:
        reason = self.gate.reason
        if reason is InteractionReason.MARKER_NAVIGATION:
            log.debug("Filter reframe skipped, marker navigation in progress")
            return
        if reason is InteractionReason.USER_GESTURE:
            delay = max(self.gate.remaining_ms(), self._cfg.filter_debounce_ms)
            log.debug("Filter reframe postponed %d ms for user gesture", delay)
            self.slots.schedule(SLOT_FILTER, delay, self._handle_filter_change)
            return
        self.sync.reconcile(ReframeTrigger.FILTER_CHANGED)

    # ── Host interaction ───────────────────────────────────────────

    def notify_user_gesture(self) -> None:
        """The user panned / zoomed / clicked a map link."""
        self.gate.set(InteractionReason.USER_GESTURE)

    def notify_marker_activated(self, feature_id: str) -> bool:
        """Marker click: select it and fly to it.  Returns True if handled."""
        now = time.monotonic()
        last = self._last_activation
        if last and last[0] == feature_id and (now - last[1]) * 1000.0 < self._cfg.repeat_click_ms:
            log.debug("Repeated activation of %s ignored", feature_id)
            return False

        feature = self.store.get(feature_id)
        if feature is None:
            log.warning("Activation of unknown feature %s", feature_id)
            return False
        self._last_activation = (feature_id, now)

        if feature.kind is FeatureKind.GROUP:
            return self._activate_group(feature)
        if not feature.has_valid_coordinate:
            log.warning("Feature %s (%s) has no usable coordinate", feature_id, feature.name)
            return False

        self._begin_marker_navigation()
        self._select("select_feature", feature.feature_id)
        return self._move(
            InteractionReason.MARKER_NAVIGATION,
            lambda done: self._projector.fly_to(
                feature.coordinate, self._cfg.marker_zoom, self._cfg.marker_fly_ms, done),
        )

    def _activate_group(self, feature: Feature) -> bool:
        key = feature.group_key or feature.name
        coords = self.store.coordinates_for(self.store.group_members(key))
        self._begin_marker_navigation()
        self._select("select_group", key)
        if not coords:
            log.info("Group %s has no located members, camera left alone", key)
            self.gate.clear(InteractionReason.MARKER_NAVIGATION)
            return True
        bounds = Bounds.from_coordinates(coords)
        return self._move(
            InteractionReason.MARKER_NAVIGATION,
            lambda done: self._projector.fit_to(
                bounds, self._cfg.padding_fraction, self._cfg.max_fit_zoom,
                self._cfg.reframe_ms, done),
        )

    def notify_cluster_activated(self, cluster_id: str) -> bool:
        """Cluster click: zoom in on its geo centroid."""
        cluster = self.clustering.cluster(cluster_id)
        if cluster is None:
            log.warning("Activation of unknown cluster %s", cluster_id)
            return False
        lon, lat = cluster.geo_centroid
        if not (math.isfinite(lon) and math.isfinite(lat)):
            log.warning("Cluster %s has no geo centroid", cluster_id)
            return False

        zoom = self._projector.current_zoom() + self._cfg.cluster_zoom_step
        self.gate.set(InteractionReason.PROGRAMMATIC_REFRAME)
        return self._move(
            InteractionReason.PROGRAMMATIC_REFRAME,
            lambda done: self._projector.fly_to(
                (lon, lat), zoom, self._cfg.cluster_fly_ms, done),
        )

    def activate(self, entity_id: str) -> bool:
        if self.clustering.cluster(entity_id) is not None:
            return self.notify_cluster_activated(entity_id)
        return self.notify_marker_activated(entity_id)

    def bind_marker(self, entity_id: str) -> Optional[Callable[..., bool]]:
        """Activation handler for a marker or cluster.

        Returns the handler the first time an entity is bound and None
        afterwards, so a re-rendered marker never gets a second listener.
        Bindings are released when a cluster is removed or on reload.
        """
        if entity_id in self._bound:
            return None
        self._bound.add(entity_id)
        return lambda *args: self.activate(entity_id)

    def is_bound(self, entity_id: str) -> bool:
        return entity_id in self._bound

    def unbind_marker(self, entity_id: str) -> None:
        self._bound.discard(entity_id)

    # ── Internals ──────────────────────────────────────────────────

    def _select(self, method: str, key: str) -> None:
        if self._sink is None:
            return
        try:
            getattr(self._sink, method)(key)
        except Exception:
            log.exception("Selection sink %s(%s) failed", method, key)

    def _begin_marker_navigation(self) -> None:
        self.gate.set(InteractionReason.MARKER_NAVIGATION)
        if self.slots.cancel(SLOT_FILTER):
            log.debug("Pending filter reframe dropped for marker navigation")

    def _move(self, reason: InteractionReason, issue: Callable[[Callable], None]) -> bool:
        def done(state: ViewState) -> None:
            # Marker navigation also covers the sink's filter side effects,
            # so it runs until the gate's own expiry.
            if reason is not InteractionReason.MARKER_NAVIGATION:
                self.gate.clear(reason)
            self.slots.schedule(SLOT_VIEWPORT, self._cfg.settle_delay_ms, self.recompute)

        try:
            issue(done)
        except Exception:
            log.exception("Camera move for %s failed", reason.value)
            self.gate.clear(reason)
            return False
        return True

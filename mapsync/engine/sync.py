"""
View synchronizer — reframes the camera to the filter's visible subset.

Reconcile flow
──────────────
  1. Projector not ready → retry on a fixed schedule, then give up with a
     log line.  Never raises.
  2. Read the filter.  Initial load with no active filter → no camera
     move, only a clustering pass.
  3. Visible subset = coordinates of the matching features, read from the
     Feature Store (clustering output is never consulted).
  4. Non-empty subset → padded bounding-box fit capped at the max zoom.
     A fit that zooms in by more than ``zoom_jump_clear`` clears the
     clusters first so stale groupings do not stretch across the zoom.
  5. Empty subset → fly home (default center / zoom), except on the very
     first reconcile with no active filter.
  6. On settle → clear the interaction reason this reconcile set, then
     schedule a clustering pass after the settle delay.

A newer reconcile supersedes an older in-flight one: the projector drops
the old animation together with its settle callback.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from PyQt5 import QtCore

from ..config import EngineConfig
from ..geo.bounds import Bounds
from ..geo.feature_store import FeatureStore
from ..geo.projector import GeometryProjector, ViewState
from .clustering import ClusteringEngine
from .debounce import SLOT_RETRY, SLOT_VIEWPORT, DebounceSlots
from .filters import read_filter
from .gate import InteractionGate, InteractionReason

log = logging.getLogger(__name__)


class ReframeTrigger(Enum):
    INITIAL_LOAD = "initial_load"
    FILTER_CHANGED = "filter_changed"
    EXPLICIT_REFRESH_REQUEST = "explicit_refresh_request"


class ViewSynchronizer(QtCore.QObject):
    """Keeps the camera framed on whatever the filter currently matches.

    Signals
    -------
    reframe_started(ReframeTrigger)
        A camera move was issued for this trigger.
    reframe_settled(ReframeTrigger)
        The move finished and the interaction reason was released.
    reframe_abandoned(ReframeTrigger)
        The projector never became ready within the retry budget.
    """

    reframe_started = QtCore.pyqtSignal(object)
    reframe_settled = QtCore.pyqtSignal(object)
    reframe_abandoned = QtCore.pyqtSignal(object)

    def __init__(
        self,
        projector: GeometryProjector,
        store: FeatureStore,
        filter_source,
        clustering: ClusteringEngine,
        gate: InteractionGate,
        slots: DebounceSlots,
        recompute: Callable[[], object],
        config: Optional[EngineConfig] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._projector = projector
        self._store = store
        self._filter = filter_source
        self._clustering = clustering
        self._gate = gate
        self._slots = slots
        self._recompute = recompute
        self._cfg = config if config is not None else EngineConfig()
        self._reconciled = False

    @property
    def has_reconciled(self) -> bool:
        return self._reconciled

    def reset(self) -> None:
        """Treat the next reconcile as the first one again."""
        self._slots.cancel(SLOT_RETRY)
        self._reconciled = False

    def cancel(self) -> None:
        self._slots.cancel(SLOT_RETRY)

    # ── Reconcile ──────────────────────────────────────────────────

    def reconcile(self, trigger: ReframeTrigger, attempt: int = 0) -> bool:
        """Bring the camera in line with the filter.

        Returns True if a camera move was issued.
        """
        if not self._projector_ready():
            self._defer(trigger, attempt)
            return False
        self._slots.cancel(SLOT_RETRY)

        first = not self._reconciled
        self._reconciled = True
        snapshot = read_filter(self._filter)

        if trigger is ReframeTrigger.INITIAL_LOAD and not snapshot.active:
            log.info("Initial load without an active filter, keeping the default view")
            self._schedule_recompute()
            return False

        reason = (InteractionReason.FILTER_REFRAME
                  if trigger is ReframeTrigger.FILTER_CHANGED
                  else InteractionReason.PROGRAMMATIC_REFRAME)
        duration = self._cfg.initial_reframe_ms if first else self._cfg.reframe_ms
        coords = self._store.coordinates_for(snapshot.matching) if snapshot.active else []

        if coords:
            return self._fit(Bounds.from_coordinates(coords), trigger, reason, duration)
        if first and not snapshot.active:
            self._schedule_recompute()
            return False
        return self._fly_home(trigger, reason, duration)

    def _fit(
        self,
        bounds: Bounds,
        trigger: ReframeTrigger,
        reason: InteractionReason,
        duration: int,
    ) -> bool:
        cfg = self._cfg
        try:
            _, target_zoom = self._projector.camera_for_bounds(
                bounds, cfg.padding_fraction, cfg.max_fit_zoom)
            if target_zoom > self._projector.current_zoom() + cfg.zoom_jump_clear:
                self._clustering.clear()
        except Exception:
            log.exception("camera_for_bounds failed for %s", bounds.as_tuple)

        log.info("Reframe (%s) to %s over %d ms", trigger.value, bounds.as_tuple, duration)
        self._gate.set(reason)
        try:
            self._projector.fit_to(
                bounds, cfg.padding_fraction, cfg.max_fit_zoom, duration,
                on_settled=lambda state, r=reason, t=trigger: self._settled(state, r, t),
            )
        except Exception:
            log.exception("fit_to failed, reframe (%s) dropped", trigger.value)
            self._gate.clear(reason)
            return False
        self.reframe_started.emit(trigger)
        return True

    def _fly_home(
        self,
        trigger: ReframeTrigger,
        reason: InteractionReason,
        duration: int,
    ) -> bool:
        cfg = self._cfg
        try:
            width, _ = self._projector.viewport_size()
        except Exception:
            log.exception("viewport_size failed, assuming a wide viewport")
            width = float(cfg.narrow_breakpoint_px + 1)
        zoom = cfg.default_zoom(width)

        self._clustering.clear()
        log.info("Nothing to frame (%s), returning to default view %s @ %.2f",
                 trigger.value, cfg.default_center, zoom)
        self._gate.set(reason)
        try:
            self._projector.fly_to(
                cfg.default_center, zoom, duration,
                on_settled=lambda state, r=reason, t=trigger: self._settled(state, r, t),
            )
        except Exception:
            log.exception("fly_to failed, reframe (%s) dropped", trigger.value)
            self._gate.clear(reason)
            return False
        self.reframe_started.emit(trigger)
        return True

    def _settled(self, state: ViewState, reason: InteractionReason, trigger: ReframeTrigger) -> None:
        self._gate.clear(reason)
        log.debug("Reframe (%s) settled at zoom %.2f", trigger.value, state.zoom)
        self.reframe_settled.emit(trigger)
        self._schedule_recompute()

    # ── Helpers ────────────────────────────────────────────────────

    def _schedule_recompute(self) -> None:
        self._slots.schedule(SLOT_VIEWPORT, self._cfg.settle_delay_ms, self._recompute)

    def _projector_ready(self) -> bool:
        try:
            return bool(self._projector.is_ready())
        except Exception:
            log.exception("Projector readiness check failed")
            return False

    def _defer(self, trigger: ReframeTrigger, attempt: int) -> None:
        cfg = self._cfg
        if attempt >= cfg.retry_attempts:
            log.warning("Projector not ready after %d retries, skipping %s reframe",
                        attempt, trigger.value)
            self.reframe_abandoned.emit(trigger)
            return
        log.info("Projector not ready, retrying %s reframe in %d ms (%d/%d)",
                 trigger.value, cfg.retry_interval_ms, attempt + 1, cfg.retry_attempts)
        self._slots.schedule(
            SLOT_RETRY, cfg.retry_interval_ms,
            lambda: self.reconcile(trigger, attempt + 1),
        )

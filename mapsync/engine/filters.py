"""
Filter Source contract, a predicate-backed implementation, and the
polling fallback for sources that cannot push change notifications.

The engine never owns filter state.  It pulls ``is_filter_active()`` and
``matching_feature_ids()`` on demand and treats every call as a
collaborator boundary: an exception is logged and the pass continues as
if the filter matched nothing.

Usage
-----
    source = PredicateFilterSource(store)
    source.set_predicate(name_predicate({"Beit Ummar", "Halhul"}))
    snapshot = read_filter(source)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Optional

from PyQt5 import QtCore

from ..geo.feature import Feature
from ..geo.feature_store import FeatureStore

log = logging.getLogger(__name__)

Predicate = Callable[[Feature], bool]


@dataclass(frozen=True)
class FilterSnapshot:
    """Filter state as read at one instant."""
    active: bool
    matching: FrozenSet[str]

    def admits(self, feature_id: str) -> bool:
        """Whether a feature is eligible for display under this filter."""
        return not self.active or feature_id in self.matching


def read_filter(source) -> FilterSnapshot:
    """Read a filter source through a guarded boundary."""
    try:
        active = bool(source.is_filter_active())
    except Exception:
        log.exception("Filter source failed in is_filter_active(), assuming inactive")
        active = False
    if not active:
        return FilterSnapshot(False, frozenset())
    try:
        matching = frozenset(source.matching_feature_ids())
    except Exception:
        log.exception("Filter source failed in matching_feature_ids(), matching nothing")
        matching = frozenset()
    return FilterSnapshot(True, matching)


def has_change_signal(source) -> bool:
    return isinstance(getattr(source, "filter_changed", None), QtCore.pyqtBoundSignal)


# ── Predicate helpers ─────────────────────────────────────────────────

def name_predicate(names: Iterable[str]) -> Predicate:
    wanted = {n.strip().lower() for n in names if n and n.strip()}
    return lambda f: f.name.lower() in wanted


def group_predicate(group_keys: Iterable[str]) -> Predicate:
    wanted = set(group_keys)
    return lambda f: f.group_key in wanted


class FilterSource(QtCore.QObject):
    """Base for push-capable filter sources.

    Signals
    -------
    filter_changed()
        Emitted after the filter state changed.
    """

    filter_changed = QtCore.pyqtSignal()

    def is_filter_active(self) -> bool:
        raise NotImplementedError

    def matching_feature_ids(self) -> FrozenSet[str]:
        raise NotImplementedError


class PredicateFilterSource(FilterSource):
    """Filter defined by a predicate over the store's point features."""

    def __init__(self, store: FeatureStore, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent)
        self._store = store
        self._predicate: Optional[Predicate] = None

    def set_predicate(self, predicate: Optional[Predicate]) -> None:
        self._predicate = predicate
        self.filter_changed.emit()

    def clear(self) -> None:
        self.set_predicate(None)

    def is_filter_active(self) -> bool:
        return self._predicate is not None

    def matching_feature_ids(self) -> FrozenSet[str]:
        if self._predicate is None:
            return frozenset()
        try:
            return frozenset(
                f.feature_id for f in self._store.points() if self._predicate(f)
            )
        except Exception:
            log.exception("Filter predicate raised, treating as matched nothing")
            return frozenset()


class FilterPoller(QtCore.QObject):
    """Degraded change detection for sources without ``filter_changed``.

    Polls the source on a capped interval and emits ``filter_changed``
    when the snapshot differs from the last one seen.
    """

    filter_changed = QtCore.pyqtSignal()

    def __init__(
        self,
        source,
        interval_ms: int = 1000,
        floor_ms: int = 250,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._source = source
        self._last: Optional[FilterSnapshot] = None
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(max(int(interval_ms), int(floor_ms)))
        self._timer.timeout.connect(self.poll)

    @property
    def interval_ms(self) -> int:
        return self._timer.interval()

    def start(self) -> None:
        self._last = read_filter(self._source)
        self._timer.start()
        log.info("Filter source has no change signal, polling every %d ms",
                 self._timer.interval())

    def stop(self) -> None:
        self._timer.stop()

    def is_running(self) -> bool:
        return self._timer.isActive()

    def poll(self) -> bool:
        snap = read_filter(self._source)
        if snap == self._last:
            return False
        self._last = snap
        self.filter_changed.emit()
        return True

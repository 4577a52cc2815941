"""
Interaction gate — the single answer to "why is the view moving right now?".

Exactly one ``InteractionReason`` is current at any time.  Setting a reason
is last-writer-wins and arms an expiry timer sized for that reason; when it
runs out the gate falls back to ``NONE`` on its own, so a caller that never
signals "done" cannot wedge the engine.  ``clear(reason)`` is the explicit
done signal and only applies while that reason is still the current one.

Anything reacting to a view-settle or filter-change notification asks the
gate first and skips its own reaction when the event was self-caused.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from PyQt5 import QtCore

from ..config import EngineConfig

log = logging.getLogger(__name__)


class InteractionReason(Enum):
    NONE = "none"
    USER_GESTURE = "user_gesture"
    PROGRAMMATIC_REFRAME = "programmatic_reframe"
    MARKER_NAVIGATION = "marker_navigation"
    FILTER_REFRAME = "filter_reframe"


# Moves the engine started itself; their settle handling belongs to the initiator
ENGINE_MOVES = frozenset({
    InteractionReason.PROGRAMMATIC_REFRAME,
    InteractionReason.MARKER_NAVIGATION,
    InteractionReason.FILTER_REFRAME,
})


class InteractionGate(QtCore.QObject):
    """Time-bounded, enumerated interaction state.

    Signals
    -------
    reason_changed(InteractionReason)
        Emitted on every transition, including timer expiry.
    """

    reason_changed = QtCore.pyqtSignal(object)

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        cfg = config if config is not None else EngineConfig()
        self._windows: Dict[InteractionReason, int] = {
            InteractionReason.USER_GESTURE: cfg.user_gesture_ms,
            InteractionReason.PROGRAMMATIC_REFRAME: cfg.programmatic_reframe_ms,
            InteractionReason.MARKER_NAVIGATION: cfg.marker_navigation_ms,
            InteractionReason.FILTER_REFRAME: cfg.filter_reframe_ms,
        }
        self._reason = InteractionReason.NONE

        self._expiry = QtCore.QTimer(self)
        self._expiry.setSingleShot(True)
        self._expiry.timeout.connect(self._expire)

    @property
    def reason(self) -> InteractionReason:
        return self._reason

    def current(self) -> InteractionReason:
        return self._reason

    def is_active(self, *reasons: InteractionReason) -> bool:
        return self._reason in reasons

    def is_idle(self) -> bool:
        return self._reason is InteractionReason.NONE

    def window_ms(self, reason: InteractionReason) -> int:
        return self._windows.get(reason, 0)

    def remaining_ms(self) -> int:
        return self._expiry.remainingTime() if self._expiry.isActive() else 0

    def set(self, reason: InteractionReason) -> None:
        """Make *reason* current and restart its expiry countdown."""
        if reason is InteractionReason.NONE:
            self._transition(reason)
            return
        self._expiry.start(self._windows[reason])
        self._transition(reason)

    def clear(self, reason: Optional[InteractionReason] = None) -> bool:
        """Explicit done signal.

        With *reason* given, only clears if that reason is still current,
        so a late "done" from an older move cannot wipe a newer reason.
        """
        if reason is not None and self._reason is not reason:
            return False
        self._transition(InteractionReason.NONE)
        return True

    def _expire(self) -> None:
        log.debug("Interaction reason %s expired", self._reason.value)
        self._transition(InteractionReason.NONE)

    def _transition(self, reason: InteractionReason) -> None:
        if reason is InteractionReason.NONE:
            self._expiry.stop()
        previous = self._reason
        self._reason = reason
        if previous is not reason:
            log.debug("Interaction reason %s → %s", previous.value, reason.value)
        self.reason_changed.emit(reason)

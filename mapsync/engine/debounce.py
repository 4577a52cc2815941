"""
Named debounce slots on the Qt event loop.

Each trigger class (viewport settle, filter mutation, refresh request …)
is funnelled through a slot name.  Scheduling on a name that still has a
pending callback cancels that callback and restarts the wait, so within a
slot only the latest trigger ever runs.  Distinct names never touch each
other.

The same mechanism carries every other cancelable deferred side effect in
the engine (cluster fade-out removal, retry backoff): a cancelled slot's
callback never fires.

Usage
-----
    slots = DebounceSlots()
    slots.schedule("viewport", 10, recompute)
    slots.schedule("viewport", 10, recompute)   # first one is discarded
    slots.cancel("viewport")
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from PyQt5 import QtCore

log = logging.getLogger(__name__)

SLOT_VIEWPORT = "viewport"
SLOT_FILTER = "filter"
SLOT_REFRESH = "refresh"
SLOT_RETRY = "reconcile-retry"


class DebounceSlots(QtCore.QObject):
    """Cancel-then-restart timers keyed by slot name."""

    def __init__(self, parent: Optional[QtCore.QObject] = None):
        super().__init__(parent)
        self._pending: Dict[str, Tuple[QtCore.QTimer, Callable[[], None]]] = {}

    def schedule(self, name: str, delay_ms: int, callback: Callable[[], None]) -> None:
        """Run *callback* after *delay_ms* unless *name* is rescheduled first."""
        if self.cancel(name):
            log.debug("Slot %s restarted", name)
        timer = QtCore.QTimer(self)
        timer.setSingleShot(True)
        timer.timeout.connect(lambda n=name, t=timer: self._fire(n, t))
        self._pending[name] = (timer, callback)
        timer.start(max(int(delay_ms), 0))

    def cancel(self, name: str) -> bool:
        """Cancel a pending slot.  Returns True if something was pending."""
        entry = self._pending.pop(name, None)
        if entry is None:
            return False
        timer, _ = entry
        timer.stop()
        timer.deleteLater()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        names = [n for n in self._pending if n.startswith(prefix)]
        for n in names:
            self.cancel(n)
        return len(names)

    def cancel_all(self) -> None:
        for name in list(self._pending):
            self.cancel(name)

    def is_pending(self, name: str) -> bool:
        return name in self._pending

    def pending(self) -> List[str]:
        return sorted(self._pending)

    def fire_now(self, name: str) -> bool:
        """Run a pending slot immediately instead of waiting."""
        entry = self._pending.get(name)
        if entry is None:
            return False
        self._fire(name, entry[0])
        return True

    def _fire(self, name: str, timer: QtCore.QTimer) -> None:
        entry = self._pending.get(name)
        # A stale timer from a superseded schedule must not run the new callback
        if entry is None or entry[0] is not timer:
            return
        del self._pending[name]
        timer.stop()
        timer.deleteLater()
        callback = entry[1]
        try:
            callback()
        except Exception:
            log.exception("Deferred callback for slot %s failed", name)

"""Polling change notification.

Derived views are pure functions of a :class:`~heatboard.records.Snapshot`,
so the only thing worth watching is the snapshot's content version.
:class:`SnapshotWatcher` polls a loader and calls its observers whenever the
version changes.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .records import Snapshot

logger = logging.getLogger(__name__)

ACTIVE_INTERVAL = 0.5
IDLE_INTERVAL = 10.0

Observer = Callable[[Snapshot], None]


class SnapshotWatcher:
    def __init__(self, loader: Callable[[], Snapshot], interval: Optional[float] = None):
        self.loader = loader
        self.interval = interval
        self.version: Optional[str] = None
        self.snapshot: Optional[Snapshot] = None
        self._observers: List[Observer] = []
        self._stop = threading.Event()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; the returned callable unregisters it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def next_interval(self) -> float:
        if self.interval is not None:
            return self.interval
        # Poll quickly while a race is running
        if self.snapshot is not None and self.snapshot.current_race() is not None and self.snapshot.current_race().is_active:
            return ACTIVE_INTERVAL
        return IDLE_INTERVAL

    def poll_once(self) -> bool:
        """Load once; notify observers and return True if the version changed."""
        snapshot = self.loader()
        version = snapshot.version
        if version == self.version:
            return False
        logger.debug("Snapshot changed: %s -> %s", self.version, version)
        self.version = version
        self.snapshot = snapshot
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Snapshot observer %r failed", observer)
        return True

    def run(self) -> None:
        """Poll until :meth:`stop` is called. Loader errors are logged and retried."""
        self._stop.clear()
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Snapshot load failed")
            self._stop.wait(self.next_interval())

    def stop(self) -> None:
        self._stop.set()

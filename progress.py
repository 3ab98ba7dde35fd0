"""
Progress/finished/error events for long-running launcher tasks.

Observers subscribe to an ``EventBus`` and receive ``(event_name, payload)``
for every emission.  Payloads are complete "current state" snapshots, so an
observer that misses or sees a duplicate emission still renders the right
thing.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

DOWNLOAD_PROGRESS = "download://progress"
DOWNLOAD_FINISHED = "download://finished"
DOWNLOAD_ERROR = "download://error"
UPDATABLE_PROGRESS = "updatable://progress"
UPDATABLE_FINISHED = "updatable://finished"
UPDATABLE_ERROR = "updatable://error"
DEPOT_DOWNLOADER = "depot-downloader"

Observer = Callable[[str, Any], None]

_log = logging.getLogger(__name__)


def overall_from_step(step: int, step_progress: float, steps_total: int) -> float:
    """Percent (0..100) for a 1-based step with fractional progress inside it."""
    if steps_total <= 0:
        return 0.0
    s = min(max(step, 1), steps_total)
    sp = min(max(step_progress, 0.0), 1.0)
    return min(max(((s - 1) + sp) / steps_total * 100.0, 0.0), 100.0)


@dataclass
class TaskProgressPayload:
    version: int
    phase: str
    steps_total: int
    step: int  # 1-based
    step_name: str
    step_progress: float  # 0.0..1.0
    overall_percent: float  # 0.0..100.0
    detail: str | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None
    extracted_files: int | None = None
    total_files: int | None = None


@dataclass
class TaskFinishedPayload:
    version: int
    path: str


@dataclass
class TaskErrorPayload:
    version: int
    message: str
    cancelled: bool = False


@dataclass
class TaskUpdatableProgressPayload:
    version: int
    total: int
    checked: int
    updatable_mods: list[str] = field(default_factory=list)
    detail: str | None = None


@dataclass
class DepotDownloaderPayload:
    """Body of a ``depot-downloader`` event.

    ``type`` is one of: output, progress, needs_two_factor,
    needs_mobile_confirmation, two_factor_incorrect, login_success,
    login_failed, download_complete, error.
    """

    type: str
    session_id: int | None = None
    message: str | None = None
    current: int | None = None
    total: int | None = None


class EventBus:
    """Synchronous fan-out of named events to any number of observers."""

    def __init__(self):
        self._observers: list[Observer] = []
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def emit(self, name: str, payload: Any):
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(name, payload)
            except Exception:
                _log.exception("Observer %r failed handling %s", observer, name)

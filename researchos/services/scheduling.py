# Rev 0.1.0
"""Timers and runners.

The sync core only ever talks to ``CancellableTimer`` and ``Runner``. The Qt
implementations are used by the app; the manual/inline ones drive tests and
demo mode deterministically.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Protocol

from PySide6.QtCore import QObject, QRunnable, Qt, QThreadPool, QTimer, Signal

from researchos.models.errors import RemoteResult

log = logging.getLogger(__name__)

Callback = Callable[[], None]
DoneCallback = Callable[[RemoteResult], None]


class CancellableTimer(Protocol):
    def start(self, delay_ms: int) -> None: ...     # (re)arm; a pending shot is replaced
    def cancel(self) -> None: ...
    @property
    def is_active(self) -> bool: ...


TimerFactory = Callable[[Callback, bool], CancellableTimer]


class ManualTimer:
    """Timer that only fires when told to."""

    def __init__(self, callback: Callback, repeat: bool = False):
        self._callback = callback
        self.repeat = repeat
        self.delay_ms: Optional[int] = None
        self.starts = 0
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, delay_ms: int) -> None:
        self.delay_ms = delay_ms
        self.starts += 1
        self._active = True

    def cancel(self) -> None:
        self._active = False

    def fire(self) -> bool:
        if not self._active:
            return False
        if not self.repeat:
            self._active = False
        self._callback()
        return True


class ManualTimerFactory:
    """Hands out ManualTimers and remembers them so tests can fire them."""

    def __init__(self):
        self.timers: List[ManualTimer] = []

    def __call__(self, callback: Callback, repeat: bool = False) -> ManualTimer:
        t = ManualTimer(callback, repeat)
        self.timers.append(t)
        return t


class QtTimer(QObject):
    def __init__(self, callback: Callback, repeat: bool = False, parent: Optional[QObject] = None):
        super().__init__(parent)
        self._timer = QTimer(self)
        self._timer.setSingleShot(not repeat)
        self._timer.timeout.connect(callback)

    @property
    def is_active(self) -> bool:
        return self._timer.isActive()

    def start(self, delay_ms: int) -> None:
        # QTimer.start() on a running timer stops and restarts it
        self._timer.start(int(delay_ms))

    def cancel(self) -> None:
        self._timer.stop()


def qt_timer_factory(callback: Callback, repeat: bool = False) -> QtTimer:
    return QtTimer(callback, repeat)


# ---- runners ----------------------------------------------------------------

def call_remote(fn: Callable[[], Any]) -> RemoteResult:
    """Run a backend call; anything it raises becomes an error result."""
    try:
        res = fn()
    except Exception as e:  # backend boundary: errors travel as results
        log.exception("Remote call failed")
        return RemoteResult.fail("exception", str(e))
    return res if isinstance(res, RemoteResult) else RemoteResult(data=res)


class Runner(Protocol):
    def submit(self, fn: Callable[[], Any], on_done: Optional[DoneCallback] = None) -> None: ...


class InlineRunner:
    """Runs the call right away on the caller's stack."""

    def submit(self, fn: Callable[[], Any], on_done: Optional[DoneCallback] = None) -> None:
        result = call_remote(fn)
        if on_done is not None:
            on_done(result)


class DeferredRunner:
    """Queues calls until ``drain()``; lets tests interleave events with in-flight writes."""

    def __init__(self):
        self.queue: List[tuple[Callable[[], Any], Optional[DoneCallback]]] = []

    def submit(self, fn: Callable[[], Any], on_done: Optional[DoneCallback] = None) -> None:
        self.queue.append((fn, on_done))

    def drain(self) -> int:
        n = 0
        while self.queue:
            fn, on_done = self.queue.pop(0)
            result = call_remote(fn)
            if on_done is not None:
                on_done(result)
            n += 1
        return n


class _Relay(QObject):
    done = Signal(object, object)


class _Job(QRunnable):
    def __init__(self, fn: Callable[[], Any], on_done: Optional[DoneCallback], relay: _Relay):
        super().__init__()
        self._fn, self._on_done, self._relay = fn, on_done, relay

    def run(self) -> None:
        self._relay.done.emit(self._on_done, call_remote(self._fn))


class QtThreadRunner(QObject):
    """Runs backend calls on QThreadPool; callbacks come back on the GUI thread."""

    def __init__(self, pool: Optional[QThreadPool] = None, parent: Optional[QObject] = None):
        super().__init__(parent)
        self._pool = pool or QThreadPool.globalInstance()
        self._relay = _Relay()
        self._relay.done.connect(self._deliver, Qt.ConnectionType.QueuedConnection)

    def submit(self, fn: Callable[[], Any], on_done: Optional[DoneCallback] = None) -> None:
        self._pool.start(_Job(fn, on_done, self._relay))

    @staticmethod
    def _deliver(on_done: Optional[DoneCallback], result: RemoteResult) -> None:
        if on_done is not None:
            on_done(result)

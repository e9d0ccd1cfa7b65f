"""Delivery of observer callbacks onto a single presentation context."""

from __future__ import annotations

import logging as py_logging
import queue
import threading
from collections.abc import Callable
from typing import Protocol

logger = py_logging.getLogger(__name__)

Callback = Callable[[], None]


class Dispatcher(Protocol):
    def post(self, callback: Callback) -> None: ...


def _invoke(callback: Callback) -> None:
    try:
        callback()
    except Exception:
        logger.exception("dispatched callback failed")


class ImmediateDispatcher:
    """Run callbacks inline, serialized so observers never run concurrently."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def post(self, callback: Callback) -> None:
        with self._lock:
            _invoke(callback)


class QueueDispatcher:
    """Queue callbacks for a consumer thread that drains them with ``run_pending``."""

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[Callback] = queue.SimpleQueue()

    def post(self, callback: Callback) -> None:
        self._queue.put(callback)

    def pending(self) -> int:
        return self._queue.qsize()

    def run_pending(self, *, timeout: float | None = None, limit: int | None = None) -> int:
        """Run queued callbacks on the calling thread and return how many ran.

        With ``timeout`` the first callback is awaited up to that many seconds;
        the remaining queue is drained without blocking.
        """
        executed = 0
        block = timeout is not None
        while limit is None or executed < limit:
            try:
                callback = self._queue.get(block=block, timeout=timeout) if block else self._queue.get_nowait()
            except queue.Empty:
                break
            block = False
            _invoke(callback)
            executed += 1
        return executed


def create_qt_dispatcher() -> Dispatcher:
    """Build a dispatcher that marshals callbacks onto the Qt GUI thread.

    Must be called from the GUI thread after ``QApplication`` exists; the
    receiver lives there, so signals emitted from pump threads are queued.
    """
    from PySide6.QtCore import QObject, Signal, Slot

    class _QtDispatcher(QObject):
        invoke = Signal(object)

        def __init__(self) -> None:
            super().__init__()
            self.invoke.connect(self._run)

        @Slot(object)
        def _run(self, callback: Callback) -> None:
            _invoke(callback)

        def post(self, callback: Callback) -> None:
            self.invoke.emit(callback)

    return _QtDispatcher()


DEFAULT_DISPATCHER = ImmediateDispatcher()

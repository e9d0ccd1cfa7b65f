"""Background exit notification for tracked processes."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable

import psutil

logger = py_logging.getLogger(__name__)

ExitCallback = Callable[[object, "int | None"], None]


def wait_for_exit(process: object) -> int | None:
    """Block until ``process`` exits and return its exit code when it is knowable."""
    wait = getattr(process, "wait", None)
    if not callable(wait):
        return None
    try:
        code = wait()
    except psutil.NoSuchProcess:
        return None
    except (psutil.Error, OSError):
        logger.debug("exit-watch wait failed pid=%s", getattr(process, "pid", None), exc_info=True)
        return None
    return code if isinstance(code, int) else None


class ProcessExitWatcher:
    """Invoke ``callback(process, exit_code)`` from a daemon thread when a process exits.

    The callback is bound at construction so it is in place before the
    process is launched; ``watch`` only starts waiting. A cancelled watcher
    stays silent even if its thread is still blocked on the process.
    """

    def __init__(self, callback: ExitCallback, *, name: str = "exit-watch") -> None:
        self._callback = callback
        self._name = name
        self._cancelled = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def watch(self, process: object) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(process,),
            name=f"{self._name}-{getattr(process, 'pid', '?')}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()
        return thread

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: float | None = None) -> bool:
        for thread in list(self._threads):
            thread.join(timeout)
        return not any(thread.is_alive() for thread in self._threads)

    def _run(self, process: object) -> None:
        code = wait_for_exit(process)
        if self._cancelled.is_set():
            return
        try:
            self._callback(process, code)
        except Exception:
            logger.exception("exit-watch callback failed pid=%s", getattr(process, "pid", None))

"""Keep external project status in line with terminal session lifecycle."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable
from functools import partial

from projectdeck.projects import ProjectStatus, ProjectStore
from projectdeck.terminal.exit_watch import ExitCallback, ProcessExitWatcher
from projectdeck.terminal.service import SessionEvent, SessionEventKind, TerminalService

logger = py_logging.getLogger(__name__)

WatcherFactory = Callable[[ExitCallback], ProcessExitWatcher]

_RELEASING_KINDS = {
    SessionEventKind.START_FAILED,
    SessionEventKind.STOPPING,
    SessionEventKind.STOPPED,
    SessionEventKind.EXITED,
    SessionEventKind.REMOVED,
}


class ProjectStatusBridge:
    """Translate session events into ``ProjectStore.update_runtime_status`` calls.

    Besides following service events, the bridge watches the tracked process
    itself so an exit the service never initiated still drives the project
    back to stopped. The watch follows the tracked process when child
    resolution replaces it. A process change after such an exit, when the
    session falls back to its shell, marks the project running again.
    """

    def __init__(
        self,
        service: TerminalService,
        store: ProjectStore,
        *,
        watcher_factory: WatcherFactory | None = None,
    ) -> None:
        self._service = service
        self._store = store
        self._watcher_factory = watcher_factory or _default_watcher
        self._lock = threading.Lock()
        self._watches: dict[str, tuple[ProcessExitWatcher, object]] = {}
        self._running: set[str] = set()
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> ProjectStatusBridge:
        if self._unsubscribe is None:
            self._unsubscribe = self._service.subscribe(self.handle_event)
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
            self._running.clear()
        for watcher, _ in watches:
            watcher.cancel()

    def watched_process(self, session_id: str) -> object | None:
        with self._lock:
            entry = self._watches.get(session_id)
        return entry[1] if entry else None

    def handle_event(self, event: SessionEvent) -> None:
        kind = event.kind
        if kind in _RELEASING_KINDS:
            self._release(event.session_id)

        if kind == SessionEventKind.STARTING:
            self._update(event.project_name, None, ProjectStatus.STARTING)
        elif kind == SessionEventKind.STARTED:
            with self._lock:
                self._running.add(event.session_id)
            self._update(event.project_name, event.process, ProjectStatus.RUNNING)
            self._watch(event.session_id, event.project_name, event.process)
        elif kind == SessionEventKind.PROCESS_CHANGED:
            with self._lock:
                running = event.session_id in self._running
            if running:
                self._update(event.project_name, event.process, ProjectStatus.RUNNING)
                self._watch(event.session_id, event.project_name, event.process)
        elif kind == SessionEventKind.START_FAILED:
            self._update(event.project_name, None, ProjectStatus.ERROR)
        elif kind == SessionEventKind.STOPPING:
            self._update(event.project_name, event.process, ProjectStatus.STOPPING)
        elif kind in {SessionEventKind.STOPPED, SessionEventKind.EXITED}:
            self._update(event.project_name, None, ProjectStatus.STOPPED)

    def _watch(self, session_id: str, project_name: str, process: object | None) -> None:
        if process is None:
            return
        watcher = self._watcher_factory(partial(self._on_exit, session_id, project_name))
        with self._lock:
            previous = self._watches.get(session_id)
            self._watches[session_id] = (watcher, process)
        if previous is not None:
            previous[0].cancel()
        watcher.watch(process)

    def _release(self, session_id: str) -> None:
        with self._lock:
            entry = self._watches.pop(session_id, None)
            self._running.discard(session_id)
        if entry is not None:
            entry[0].cancel()

    def _on_exit(self, session_id: str, project_name: str, process: object, exit_code: int | None) -> None:
        with self._lock:
            entry = self._watches.get(session_id)
            if entry is None or entry[1] is not process:
                return
            del self._watches[session_id]
        logger.info(
            "project-bridge unexpected exit project=%s pid=%s code=%s",
            project_name,
            getattr(process, "pid", None),
            exit_code,
        )
        self._update(project_name, None, ProjectStatus.STOPPED)

    def _update(self, project_name: str, process: object | None, status: ProjectStatus) -> None:
        try:
            self._store.update_runtime_status(project_name, process, status)
        except Exception:
            logger.exception("project-bridge store update failed project=%s status=%s", project_name, status.value)


def _default_watcher(callback: ExitCallback) -> ProcessExitWatcher:
    return ProcessExitWatcher(callback, name="project-exit")

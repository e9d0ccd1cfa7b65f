"""Terminal session orchestration: launch, child tracking, output and teardown."""

from __future__ import annotations

import atexit
import logging as py_logging
import os
import subprocess
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Protocol

from projectdeck.errors import ErrorDisplay, ExitCode, LoggingErrorDisplay, ProjectDeckError
from projectdeck.localization import StringCatalog, StringLookup, format_string
from projectdeck.logging import SessionLoggerAdapter, session_logger
from projectdeck.retry import PollAborted, PollPolicy, poll_until
from projectdeck.security import command_for_log
from projectdeck.terminal.dispatch import Dispatcher, ImmediateDispatcher
from projectdeck.terminal.exit_watch import ProcessExitWatcher
from projectdeck.terminal.models import (
    EnvironmentInput,
    SettingsProvider,
    StaticSettingsProvider,
    TerminalSession,
    TerminalStatus,
    copy_environment,
    merge_environment,
)
from projectdeck.terminal.output import DEFAULT_MAX_OUTPUT_LINES, OutputPump
from projectdeck.terminal.process_tree import (
    DEFAULT_STOP_GRACE_SECONDS,
    ProcessTreeKiller,
    ProcessTreeResolver,
    Resolution,
    ResolveOutcome,
    StopOutcome,
    StopResult,
    describe_process,
    is_process_alive,
    process_pid,
)
from projectdeck.terminal.registry import SessionRegistry
from projectdeck.terminal.shell import EMPTY_COMMAND_MESSAGE, ShellCommand, build_shell_command

logger = py_logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 500


class SessionEventKind(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    START_FAILED = "start-failed"
    PROCESS_CHANGED = "process-changed"
    EXITED = "exited"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    project_name: str
    kind: SessionEventKind
    message: str = ""
    process: object | None = None
    exit_code: int | None = None


SessionListener = Callable[[SessionEvent], None]


class Launcher(Protocol):
    def __call__(
        self,
        command: ShellCommand,
        *,
        cwd: str | None,
        environment: Mapping[str, str],
    ) -> object: ...


def launch_process(
    command: ShellCommand,
    *,
    cwd: str | None,
    environment: Mapping[str, str],
) -> subprocess.Popen[bytes]:
    """Start ``command`` with piped output and ``environment`` layered over ``os.environ``."""
    if cwd and not Path(cwd).is_dir():
        raise ProjectDeckError(
            f"Working directory not found: {cwd}",
            code=ExitCode.LAUNCH_ERROR,
            hint="Check the project path.",
        )
    child_env = dict(os.environ)
    child_env.update(environment)
    if os.name == "nt":
        platform_kwargs: dict[str, object] = {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
    else:
        platform_kwargs = {"start_new_session": True}
    try:
        return subprocess.Popen(  # type: ignore[call-overload]
            command.popen_args,
            cwd=cwd or None,
            env=child_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            **platform_kwargs,
        )
    except (OSError, ValueError) as exc:
        raise ProjectDeckError(
            f"Cannot launch {command.executable}",
            code=ExitCode.LAUNCH_ERROR,
            hint=str(exc) or "Check that the shell is installed.",
        ) from exc


class TerminalService:
    def __init__(
        self,
        *,
        settings_provider: SettingsProvider | None = None,
        error_display: ErrorDisplay | None = None,
        strings: StringLookup | None = None,
        resolver: ProcessTreeResolver | None = None,
        killer: ProcessTreeKiller | None = None,
        launcher: Launcher | None = None,
        dispatcher: Dispatcher | None = None,
        resolve_policy: PollPolicy | None = None,
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        max_output_lines: int = DEFAULT_MAX_OUTPUT_LINES,
        max_events: int = DEFAULT_MAX_EVENTS,
        platform_name: str | None = None,
        register_atexit: bool = False,
    ) -> None:
        if stop_grace_seconds < 0:
            raise ProjectDeckError(
                f"Invalid stop grace period: {stop_grace_seconds}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a non-negative number of seconds.",
            )
        self._settings_provider = settings_provider or StaticSettingsProvider()
        self._error_display = error_display or LoggingErrorDisplay()
        self._strings = strings or StringCatalog()
        self._resolver = resolver or ProcessTreeResolver()
        self._killer = killer or ProcessTreeKiller(grace_seconds=stop_grace_seconds)
        self._launcher: Launcher = launcher or launch_process
        self._dispatcher = dispatcher or ImmediateDispatcher()
        self._resolve_policy = resolve_policy or PollPolicy()
        self._max_output_lines = max_output_lines
        self._platform_name = platform_name
        self._registry = SessionRegistry()
        self._events: deque[SessionEvent] = deque(maxlen=max_events)
        self._events_lock = threading.Lock()
        self._listeners: list[SessionListener] = []
        if register_atexit:
            atexit.register(self.cleanup)

    @property
    def stop_grace_seconds(self) -> float:
        return self._killer.grace_seconds

    def create_session(
        self,
        project_name: str,
        working_directory: str = "",
        command: str = "",
        environment: EnvironmentInput = None,
    ) -> TerminalSession:
        session = self._new_session(project_name, working_directory, command, environment)
        self._registry.add(session)
        self._emit(session, SessionEventKind.CREATED, "Session created.")
        return session

    def ensure_session(
        self,
        project_name: str,
        working_directory: str = "",
        command: str = "",
        environment: EnvironmentInput = None,
    ) -> TerminalSession:
        """Return the session registered for ``project_name``, refreshing its definition.

        A new session is created only when the project has none yet; output
        history of a reused session is kept.
        """
        existing = self._registry.find_by_project(project_name.strip())
        if existing is None:
            candidate = self._new_session(project_name, working_directory, command, environment)
            registered = self._registry.add_if_absent(candidate)
            if registered is candidate:
                self._emit(candidate, SessionEventKind.CREATED, "Session created.")
                return candidate
            existing = registered
        existing.update_definition(
            working_directory=working_directory,
            command=command,
            environment=environment,
        )
        return existing

    def get_session(self, session_id: str) -> TerminalSession | None:
        return self._registry.get(session_id)

    def get_all_sessions(self) -> list[TerminalSession]:
        return self._registry.snapshot()

    def find_session(self, project_name: str) -> TerminalSession | None:
        return self._registry.find_by_project(project_name.strip())

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        with self._events_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._events_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def list_events(self) -> list[SessionEvent]:
        with self._events_lock:
            return list(self._events)

    def clear_output(self, session: TerminalSession) -> None:
        session.clear_output()

    async def start_session(
        self,
        session: TerminalSession,
        env_override: EnvironmentInput = None,
    ) -> bool:
        """Launch the session's command; ``False`` when already active or the launch failed."""
        log = self._session_log(session)
        with session.lock:
            busy = (
                session.launching
                or session.status == TerminalStatus.RUNNING
                or is_process_alive(session.launched_process)
            )
            if not busy:
                session.launching = True
                session.pending_exit = None
                session.cancel_event = threading.Event()
        if busy:
            session.add_output_line(self._text("Terminal_AlreadyRunning"))
            log.info("start skipped status=%s", session.status.value)
            return False

        session.set_status(TerminalStatus.STARTING)
        self._emit(session, SessionEventKind.STARTING, "Starting terminal.")
        session.add_output_line(self._text("Terminal_Launching"))

        launched: object | None = None
        try:
            environment = merge_environment(session.environment, env_override)
            settings = await self._settings_provider.get_settings()
            command = build_shell_command(
                settings.preferred_terminal,
                environment,
                session.command,
                use_utf8_code_page=settings.use_utf8_code_page,
                platform_name=self._platform_name,
            )
            session.add_output_line(
                self._text("Terminal_StartCommand", command=session.command.strip() or EMPTY_COMMAND_MESSAGE)
            )
            if session.working_directory:
                session.add_output_line(self._text("Terminal_WorkingDirectory", path=session.working_directory))
            session.add_output_line(
                self._text("Terminal_Shell", executable=command.executable, kind=command.kind.value)
            )
            log.info("launch %s", command_for_log(command.argv, environment))

            watcher = ProcessExitWatcher(
                partial(self._on_process_exit, session),
                name=f"exit-{session.session_id[:8]}",
            )
            with session.lock:
                cancelled = session.cancel_event.is_set()
                if cancelled:
                    session.launching = False
            if cancelled:
                self._cancel_start(session, None, None, log)
                return False
            launched = self._launcher(command, cwd=session.working_directory or None, environment=environment)
            with session.lock:
                session.process = launched
                session.launched_process = launched
                session.started_at = datetime.now()
            watcher.watch(launched)
            self._start_pumps(session, launched, timestamps=settings.show_timestamps)
            await self._track_child(session, launched, watcher, log)
        except Exception as exc:
            self._fail_start(session, launched, exc, log)
            return False

        tracked: object | None = None
        with session.lock:
            aborted = session.cancel_event.is_set()
            orphaned = aborted and session.launched_process is launched
            if aborted:
                session.launching = False
                session.pending_exit = None
            if orphaned:
                tracked = session.process
                session.process = None
                session.launched_process = None
        if aborted:
            log.info("start superseded by stop")
            if orphaned:
                self._cancel_start(session, tracked, launched, log)
            return False

        session.set_status(TerminalStatus.RUNNING)
        session.add_output_line(self._text("Terminal_Started"))
        self._emit(session, SessionEventKind.STARTED, "Terminal started.", process=session.process)

        with session.lock:
            session.launching = False
            pending = session.pending_exit
            session.pending_exit = None
        if pending is not None:
            self._on_process_exit(session, *pending)
        return True

    def stop_session(self, session: TerminalSession) -> StopResult:
        """Tear down the session's process tree; never raises."""
        log = self._session_log(session)
        with session.lock:
            tracked = session.process
            launched = session.launched_process
            if not is_process_alive(tracked) and not is_process_alive(launched):
                if session.launching:
                    session.cancel_event.set()
                    log.info("stop requested before launch; start cancelled")
                return StopResult(StopOutcome.NOT_RUNNING)
            session.process = None
            session.launched_process = None

        self._emit(session, SessionEventKind.STOPPING, "Stopping terminal.", process=tracked)
        pids = _tree_roots(tracked, launched)
        result = StopResult(StopOutcome.NOT_RUNNING)
        try:
            result = self._killer.stop(pids)
            log.info("stop outcome=%s pids=%s", result.outcome.value, pids)
            if result.escalated:
                session.add_output_line(
                    self._text(
                        "Terminal_StopEscalated",
                        seconds=self.stop_grace_seconds,
                        pid=pids[0] if pids else "?",
                    )
                )
            if result.outcome == StopOutcome.FAILED:
                message = self._text("Terminal_StopFailedMessage", error=result.message)
                session.add_output_line(message)
                self._show_error(message, self._text("Terminal_StopErrorTitle"))
        except Exception as exc:
            log.warning("stop failed: %s", exc, exc_info=True)
            result = StopResult(StopOutcome.FAILED, message=str(exc) or type(exc).__name__)
            session.add_output_line(self._text("Terminal_StopFailedMessage", error=result.message))
            self._show_exception(exc, self._text("Terminal_StopErrorTitle"))
        finally:
            session.cancel_event.set()
            _reap(launched)
            session.set_status(TerminalStatus.STOPPED)
            session.add_output_line(self._text("Terminal_ForceStopped"))
            self._emit(session, SessionEventKind.STOPPED, result.outcome.value)
        return result

    def remove_session(self, session_id: str) -> bool:
        session = self._registry.get(session_id)
        if session is None:
            return False
        self.stop_session(session)
        self._registry.pop(session_id)
        self._emit(session, SessionEventKind.REMOVED, "Session removed.")
        return True

    def cleanup(self) -> None:
        """Stop and forget every session; safe to call more than once."""
        for session in self._registry.drain():
            self.stop_session(session)
        logger.info("runtime-event session=* step=cleanup message=All sessions released.")

    def _new_session(
        self,
        project_name: str,
        working_directory: str,
        command: str,
        environment: EnvironmentInput,
    ) -> TerminalSession:
        name = project_name.strip()
        if not name:
            raise ProjectDeckError(
                "Project name is required.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Select a project before opening a terminal.",
            )
        return TerminalSession(
            project_name=name,
            working_directory=working_directory,
            command=command,
            environment=copy_environment(environment),
            dispatcher=self._dispatcher,
            max_output_lines=self._max_output_lines,
        )

    def _start_pumps(self, session: TerminalSession, process: object, *, timestamps: bool) -> None:
        sink = partial(session.add_output_chunk, timestamp=timestamps)
        pumps: list[OutputPump] = []
        for stream_name in ("stdout", "stderr"):
            stream = getattr(process, stream_name, None)
            if stream is None:
                continue
            pumps.append(
                OutputPump(
                    stream,
                    sink,
                    cancel=session.cancel_event,
                    name=f"{session.session_id[:8]}-{stream_name}",
                )
            )
        with session.lock:
            session.pumps = pumps
        for pump in pumps:
            pump.start()

    async def _track_child(
        self,
        session: TerminalSession,
        launched: object,
        watcher: ProcessExitWatcher,
        log: SessionLoggerAdapter,
    ) -> None:
        shell_pid = process_pid(launched)
        if shell_pid is None:
            return

        def probe() -> Resolution | None:
            if not is_process_alive(launched) or session.cancel_event.is_set():
                raise PollAborted
            resolution = self._resolver.try_resolve(shell_pid)
            if resolution.outcome == ResolveOutcome.FAILED:
                log.debug("child lookup failed pid=%s: %s", shell_pid, resolution.message)
            if resolution.found:
                return resolution
            if resolution.final:
                raise PollAborted
            return None

        resolution = await poll_until(probe, policy=self._resolve_policy)
        if resolution is None or resolution.process is None:
            log.debug("tracking shell pid=%s", shell_pid)
            return

        child = resolution.process
        with session.lock:
            if session.process is not launched:
                return
            session.process = child
        watcher.watch(child)
        session.add_output_line(
            self._text(
                "Terminal_ProcessResolved",
                name=describe_process(child),
                pid=child.pid,
                shell_pid=shell_pid,
            )
        )
        self._emit(
            session,
            SessionEventKind.PROCESS_CHANGED,
            f"Tracking pid {child.pid} instead of shell pid {shell_pid}.",
            process=child,
        )

    def _fail_start(
        self,
        session: TerminalSession,
        launched: object | None,
        exc: Exception,
        log: SessionLoggerAdapter,
    ) -> None:
        log.warning("start failed: %s", exc, exc_info=not isinstance(exc, ProjectDeckError))
        with session.lock:
            tracked = session.process
            session.process = None
            session.launched_process = None
            session.pending_exit = None
            session.launching = False
        session.cancel_event.set()
        if is_process_alive(launched) or is_process_alive(tracked):
            pids = _tree_roots(tracked, launched)
            try:
                self._killer.stop(pids)
            except Exception:
                log.warning("cleanup after failed start raised", exc_info=True)
        session.set_status(TerminalStatus.START_FAILED)
        error = str(exc) or type(exc).__name__
        session.add_output_line(self._text("Terminal_StartFailedMessage", error=error))
        self._show_exception(exc, self._text("Terminal_StartErrorTitle"))
        self._emit(session, SessionEventKind.START_FAILED, error)

    def _cancel_start(
        self,
        session: TerminalSession,
        tracked: object | None,
        launched: object | None,
        log: SessionLoggerAdapter,
    ) -> None:
        """Finish a start that a stop overtook before it owned the launched tree."""
        session.cancel_event.set()
        if is_process_alive(tracked) or is_process_alive(launched):
            try:
                self._killer.stop(_tree_roots(tracked, launched))
            except Exception:
                log.warning("teardown of cancelled start raised", exc_info=True)
        _reap(launched)
        session.set_status(TerminalStatus.STOPPED)
        session.add_output_line(self._text("Terminal_ForceStopped"))
        self._emit(session, SessionEventKind.STOPPED, "Start cancelled.")

    def _on_process_exit(self, session: TerminalSession, process: object, exit_code: int | None) -> None:
        with session.lock:
            if session.process is not process:
                return
            if session.launching:
                session.pending_exit = (process, exit_code)
                return
            shell = session.launched_process
            resumed = shell if shell is not process and is_process_alive(shell) else None
            session.process = resumed
        if resumed is not None:
            self._resume_shell(session, process, resumed, exit_code)
            return
        self._finish_exit(session, process, exit_code)

    def _resume_shell(self, session: TerminalSession, child: object, shell: object, exit_code: int | None) -> None:
        """The resolved child ended but its shell lives on; keep the session on the shell."""
        code = "unknown" if exit_code is None else exit_code
        session.add_output_line(
            self._text(
                "Terminal_ShellResumed",
                name=describe_process(child),
                pid=process_pid(child),
                code=code,
                shell_pid=process_pid(shell),
            )
        )
        self._emit(
            session,
            SessionEventKind.PROCESS_CHANGED,
            f"Pid {process_pid(child)} exited; tracking shell pid {process_pid(shell)}.",
            process=shell,
            exit_code=exit_code,
        )

    def _finish_exit(self, session: TerminalSession, process: object, exit_code: int | None) -> None:
        session.set_status(TerminalStatus.STOPPED)
        code = "unknown" if exit_code is None else exit_code
        session.add_output_line(self._text("Terminal_ProcessExited", code=code))
        self._emit(
            session,
            SessionEventKind.EXITED,
            f"Process exited with code {code}.",
            process=process,
            exit_code=exit_code,
        )

    def _emit(
        self,
        session: TerminalSession,
        kind: SessionEventKind,
        message: str,
        *,
        process: object | None = None,
        exit_code: int | None = None,
    ) -> None:
        event = SessionEvent(
            session_id=session.session_id,
            project_name=session.project_name,
            kind=kind,
            message=message,
            process=process,
            exit_code=exit_code,
        )
        with self._events_lock:
            self._events.append(event)
            listeners = list(self._listeners)
        logger.info("runtime-event session=%s step=%s message=%s", session.session_id, kind.value, message)
        for listener in listeners:
            self._dispatcher.post(partial(listener, event))

    def _session_log(self, session: TerminalSession) -> SessionLoggerAdapter:
        return session_logger(__name__, session_id=session.session_id, project_name=session.project_name)

    def _text(self, key: str, **values: object) -> str:
        return format_string(self._strings, key, **values)

    def _show_error(self, message: str, title: str) -> None:
        try:
            self._error_display.show_error(message, title)
        except Exception:
            logger.exception("error display failed title=%s", title)

    def _show_exception(self, exc: BaseException, title: str) -> None:
        try:
            self._error_display.show_exception(exc, title)
        except Exception:
            logger.exception("error display failed title=%s", title)


def _reap(process: object | None) -> None:
    poll = getattr(process, "poll", None)
    if callable(poll):
        try:
            poll()
        except OSError:
            logger.debug("poll after stop failed pid=%s", process_pid(process), exc_info=True)


def _tree_roots(*processes: object | None) -> list[int]:
    pids = (process_pid(process) for process in processes)
    return list(dict.fromkeys(pid for pid in pids if pid is not None))

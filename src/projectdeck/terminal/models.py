"""Terminal session domain models."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, Union

from projectdeck.terminal.dispatch import DEFAULT_DISPATCHER, Dispatcher
from projectdeck.terminal.output import DEFAULT_MAX_OUTPUT_LINES, OutputBuffer, OutputPump, timestamp_prefix


class TerminalKind(str, Enum):
    POWERSHELL = "powershell"
    CMD = "cmd"
    GIT_BASH = "git-bash"

    @classmethod
    def parse(cls, value: object) -> TerminalKind:
        """Map a configured terminal name onto a kind; unknown names mean PowerShell."""
        if isinstance(value, TerminalKind):
            return value
        normalized = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
        return _KIND_ALIASES.get(normalized, cls.POWERSHELL)


_KIND_ALIASES = {
    "powershell": TerminalKind.POWERSHELL,
    "pwsh": TerminalKind.POWERSHELL,
    "cmd": TerminalKind.CMD,
    "cmd.exe": TerminalKind.CMD,
    "git-bash": TerminalKind.GIT_BASH,
    "gitbash": TerminalKind.GIT_BASH,
    "bash": TerminalKind.GIT_BASH,
}


class TerminalStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    START_FAILED = "start-failed"


STATUS_STRING_KEYS = {
    TerminalStatus.RUNNING: "Terminal_Running",
    TerminalStatus.STOPPED: "Terminal_Stopped",
    TerminalStatus.STARTING: "Terminal_Starting",
    TerminalStatus.START_FAILED: "Terminal_StartFailed",
}


@dataclass(frozen=True)
class TerminalSettings:
    preferred_terminal: TerminalKind = TerminalKind.POWERSHELL
    use_utf8_code_page: bool = True
    show_timestamps: bool = True


class SettingsProvider(Protocol):
    async def get_settings(self) -> TerminalSettings: ...


class StaticSettingsProvider:
    def __init__(self, settings: TerminalSettings | None = None) -> None:
        self.settings = settings or TerminalSettings()

    async def get_settings(self) -> TerminalSettings:
        return self.settings


@dataclass(frozen=True)
class EnvironmentVariable:
    name: str
    value: str = ""
    enabled: bool = True
    description: str = ""


EnvironmentInput = Union[
    Mapping[str, object],
    Iterable[Union[EnvironmentVariable, tuple[str, object]]],
    None,
]


def copy_environment(environment: EnvironmentInput) -> dict[str, str]:
    """Return an ordered, duplicate-free copy; later duplicates win, order of first sight kept."""
    if environment is None:
        return {}
    if isinstance(environment, Mapping):
        items: Iterable[object] = list(environment.items())
    else:
        items = list(environment)

    result: dict[str, str] = {}
    for item in items:
        if isinstance(item, EnvironmentVariable):
            if not item.enabled:
                continue
            name, value = item.name, item.value
        else:
            name, value = item  # type: ignore[misc]
        key = str(name).strip()
        if not key or "=" in key or "\x00" in key:
            continue
        result[key] = "" if value is None else str(value)
    return result


def merge_environment(base: EnvironmentInput, override: EnvironmentInput) -> dict[str, str]:
    merged = copy_environment(base)
    merged.update(copy_environment(override))
    return merged


StatusListener = Callable[["TerminalSession", TerminalStatus], None]


@dataclass(eq=False)
class TerminalSession:
    project_name: str
    working_directory: str = ""
    command: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    dispatcher: Dispatcher = field(default=DEFAULT_DISPATCHER, repr=False)
    max_output_lines: int = field(default=DEFAULT_MAX_OUTPUT_LINES, repr=False)
    status: TerminalStatus = field(default=TerminalStatus.STOPPED, init=False)
    process: object | None = field(default=None, init=False, repr=False)
    started_at: datetime | None = field(default=None, init=False)
    output: OutputBuffer = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.environment = copy_environment(self.environment)
        self.output = OutputBuffer(dispatcher=self.dispatcher, max_lines=self.max_output_lines)
        self.lock = threading.RLock()
        self.launched_process: object | None = None
        self.cancel_event = threading.Event()
        self.launching = False
        self.pumps: list[OutputPump] = []
        self.pending_exit: tuple[object, int | None] | None = None
        self._status_listeners: list[StatusListener] = []

    @property
    def is_running(self) -> bool:
        return self.status == TerminalStatus.RUNNING

    @property
    def pid(self) -> int | None:
        pid = getattr(self.process, "pid", None)
        return pid if isinstance(pid, int) else None

    def update_definition(
        self,
        *,
        working_directory: str | None = None,
        command: str | None = None,
        environment: EnvironmentInput = None,
    ) -> None:
        with self.lock:
            if working_directory is not None:
                self.working_directory = working_directory
            if command is not None:
                self.command = command
            if environment is not None:
                self.environment = copy_environment(environment)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        with self.lock:
            self._status_listeners.append(listener)

        def _remove() -> None:
            with self.lock:
                if listener in self._status_listeners:
                    self._status_listeners.remove(listener)

        return _remove

    def set_status(self, status: TerminalStatus) -> TerminalStatus:
        """Record ``status`` and notify listeners on the dispatcher; returns the previous one."""
        with self.lock:
            previous = self.status
            self.status = status
            listeners = list(self._status_listeners)
        if previous != status:
            for listener in listeners:
                self.dispatcher.post(lambda listener=listener: listener(self, previous))
        return previous

    def status_display(self, lookup: object | None = None) -> str:
        key = STATUS_STRING_KEYS.get(self.status, "Terminal_Stopped")
        get_string = getattr(lookup, "get_string", None)
        if get_string is None:
            return self.status.value.replace("-", " ").title()
        return str(get_string(key))

    def add_output_line(self, message: str) -> None:
        """Append a timestamped log line."""
        self.output.append(f"{timestamp_prefix()}{message}")

    def add_output_chunk(self, text: str, *, timestamp: bool = False) -> None:
        """Append raw program output, optionally prefixed with one timestamp per chunk."""
        if not text:
            return
        self.output.append(f"{timestamp_prefix()}{text}" if timestamp else text)

    def clear_output(self) -> None:
        self.output.clear()

    def wait_for_output(self, timeout: float | None = None) -> bool:
        """Wait until the pumps of the last launch have drained their streams."""
        with self.lock:
            pumps = list(self.pumps)
        return all(pump.join(timeout) for pump in pumps)

"""Process tree inspection and teardown built on psutil."""

from __future__ import annotations

import logging as py_logging
import os
import signal
import subprocess
from collections import deque
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath, PureWindowsPath

import psutil

logger = py_logging.getLogger(__name__)

SHELL_PROCESS_NAMES = frozenset(
    {
        "cmd",
        "powershell",
        "pwsh",
        "conhost",
        "bash",
        "sh",
        "wsl",
        "wt",
        "git-bash",
        "wezterm",
    }
)
DEFAULT_STOP_GRACE_SECONDS = 2.0
FORCE_KILL_TIMEOUT_SECONDS = 10

ProcessFactory = Callable[[int], psutil.Process]
ForceKill = Callable[[int], None]
WaitProcs = Callable[..., "tuple[list[psutil.Process], list[psutil.Process]]"]


def is_shell_process_name(name: str | None, shell_names: Iterable[str] = SHELL_PROCESS_NAMES) -> bool:
    if not name or not name.strip():
        return False
    base = PureWindowsPath(PurePath(name.strip()).name).name.lower()
    if base.endswith(".exe"):
        base = base[:-4]
    return base in {item.lower() for item in shell_names}


def process_pid(process: object | None) -> int | None:
    pid = getattr(process, "pid", None)
    return pid if isinstance(pid, int) and pid > 0 else None


def is_process_alive(process: object | None) -> bool:
    """Liveness for both ``subprocess.Popen`` and ``psutil.Process`` handles."""
    if process is None:
        return False
    poll = getattr(process, "poll", None)
    if callable(poll):
        return poll() is None
    is_running = getattr(process, "is_running", None)
    if not callable(is_running):
        return False
    try:
        if not is_running():
            return False
        return process.status() != psutil.STATUS_ZOMBIE  # type: ignore[attr-defined]
    except psutil.Error:
        return False


def describe_process(process: object) -> str:
    name = getattr(process, "name", None)
    if callable(name):
        with suppress(psutil.Error, OSError):
            return str(name())
    return "process"


class ResolveOutcome(str, Enum):
    FOUND = "found"
    NOT_A_SHELL = "not-a-shell"
    NO_CHILD = "no-child"
    ROOT_EXITED = "root-exited"
    FAILED = "failed"


@dataclass(frozen=True)
class Resolution:
    outcome: ResolveOutcome
    process: psutil.Process | None = None
    message: str = ""

    @property
    def found(self) -> bool:
        return self.outcome == ResolveOutcome.FOUND and self.process is not None

    @property
    def final(self) -> bool:
        """True when polling again cannot change the answer."""
        return self.outcome in {ResolveOutcome.FOUND, ResolveOutcome.NOT_A_SHELL, ResolveOutcome.ROOT_EXITED}


class ProcessTreeResolver:
    """Find the application process a shell launched.

    The tree under the shell is walked breadth-first; the first live process
    whose name is not a known shell wins. Shell descendants (for example
    ``conhost`` or a nested ``cmd``) are searched in turn.
    """

    def __init__(
        self,
        *,
        shell_names: Iterable[str] = SHELL_PROCESS_NAMES,
        process_factory: ProcessFactory = psutil.Process,
    ) -> None:
        self._shell_names = frozenset(name.lower() for name in shell_names)
        self._process_factory = process_factory

    def is_shell(self, process: psutil.Process) -> bool:
        try:
            return is_shell_process_name(process.name(), self._shell_names)
        except psutil.Error:
            return False

    def try_resolve(self, pid: int) -> Resolution:
        try:
            root = self._process_factory(pid)
            if not is_process_alive(root):
                return Resolution(ResolveOutcome.ROOT_EXITED)
            if not self.is_shell(root):
                return Resolution(ResolveOutcome.NOT_A_SHELL)
        except psutil.NoSuchProcess:
            return Resolution(ResolveOutcome.ROOT_EXITED)
        except (psutil.Error, OSError) as exc:
            return Resolution(ResolveOutcome.FAILED, message=str(exc) or type(exc).__name__)

        visited = {pid}
        pending: deque[psutil.Process] = deque([root])
        try:
            while pending:
                current = pending.popleft()
                try:
                    children = current.children()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
                for child in children:
                    if child.pid in visited:
                        continue
                    visited.add(child.pid)
                    if not is_process_alive(child):
                        continue
                    if self.is_shell(child):
                        pending.append(child)
                        continue
                    return Resolution(ResolveOutcome.FOUND, process=child)
        except (psutil.Error, OSError) as exc:
            return Resolution(ResolveOutcome.FAILED, message=str(exc) or type(exc).__name__)
        return Resolution(ResolveOutcome.NO_CHILD)


class StopOutcome(str, Enum):
    NOT_RUNNING = "not-running"
    GRACEFUL = "graceful"
    FORCED = "forced"
    FAILED = "failed"


@dataclass(frozen=True)
class StopResult:
    outcome: StopOutcome
    survivors: tuple[int, ...] = ()
    message: str = ""

    @property
    def stopped(self) -> bool:
        return self.outcome in {StopOutcome.GRACEFUL, StopOutcome.FORCED}

    @property
    def escalated(self) -> bool:
        return self.outcome in {StopOutcome.FORCED, StopOutcome.FAILED}


def force_kill_tree(
    pid: int,
    *,
    platform_name: str | None = None,
    runner: Callable[..., object] = subprocess.run,
) -> None:
    """OS-level kill of ``pid`` and its descendants."""
    if (platform_name or os.name).strip().lower() == "nt":
        runner(
            ["taskkill", "/PID", str(pid), "/T", "/F"],
            capture_output=True,
            check=False,
            timeout=FORCE_KILL_TIMEOUT_SECONDS,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        return
    with suppress(ProcessLookupError, PermissionError):
        group = os.getpgid(pid)
        if group != os.getpgrp():
            os.killpg(group, signal.SIGKILL)
    with suppress(ProcessLookupError, PermissionError):
        os.kill(pid, signal.SIGKILL)


class ProcessTreeKiller:
    """Terminate process trees: graceful request first, forced kill for survivors."""

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        process_factory: ProcessFactory = psutil.Process,
        force_kill: ForceKill = force_kill_tree,
        wait_procs: WaitProcs = psutil.wait_procs,
    ) -> None:
        if grace_seconds < 0:
            raise ValueError(f"grace_seconds cannot be negative: {grace_seconds}")
        self.grace_seconds = grace_seconds
        self._process_factory = process_factory
        self._force_kill = force_kill
        self._wait_procs = wait_procs

    def collect(self, pids: Iterable[int]) -> list[psutil.Process]:
        found: dict[int, psutil.Process] = {}
        for pid in pids:
            if pid in found:
                continue
            try:
                root = self._process_factory(pid)
                descendants = root.children(recursive=True)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                found.setdefault(pid, root)
                continue
            found.setdefault(root.pid, root)
            for child in descendants:
                found.setdefault(child.pid, child)
        return [process for process in found.values() if is_process_alive(process)]

    def stop(self, pids: Iterable[int]) -> StopResult:
        processes = self.collect(pids)
        if not processes:
            return StopResult(StopOutcome.NOT_RUNNING)

        for process in processes:
            with suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                process.terminate()
        _, alive = self._wait_procs(processes, timeout=self.grace_seconds)
        if not alive:
            return StopResult(StopOutcome.GRACEFUL)

        logger.warning(
            "process-tree graceful stop timed out grace=%ss survivors=%s",
            self.grace_seconds,
            [process.pid for process in alive],
        )
        errors: list[str] = []
        for process in alive:
            try:
                self._force_kill(process.pid)
            except Exception as exc:
                errors.append(f"{process.pid}: {exc}")
                logger.debug("process-tree force kill failed pid=%s", process.pid, exc_info=True)
        _, survivors = self._wait_procs(alive, timeout=self.grace_seconds)
        if survivors:
            return StopResult(
                StopOutcome.FAILED,
                survivors=tuple(process.pid for process in survivors),
                message="; ".join(errors) or "Processes survived forced termination.",
            )
        return StopResult(StopOutcome.FORCED, message="; ".join(errors))

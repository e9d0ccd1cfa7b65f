"""Terminal session domain package."""

from .bridge import ProjectStatusBridge
from .dispatch import Dispatcher, ImmediateDispatcher, QueueDispatcher, create_qt_dispatcher
from .models import (
    EnvironmentVariable,
    SettingsProvider,
    StaticSettingsProvider,
    TerminalKind,
    TerminalSession,
    TerminalSettings,
    TerminalStatus,
)
from .output import OutputBuffer, OutputPump
from .process_tree import ProcessTreeKiller, ProcessTreeResolver, Resolution, StopOutcome, StopResult
from .service import SessionEvent, SessionEventKind, TerminalService
from .shell import ShellCommand, build_shell_command

__all__ = [
    "build_shell_command",
    "create_qt_dispatcher",
    "Dispatcher",
    "EnvironmentVariable",
    "ImmediateDispatcher",
    "OutputBuffer",
    "OutputPump",
    "ProcessTreeKiller",
    "ProcessTreeResolver",
    "ProjectStatusBridge",
    "QueueDispatcher",
    "Resolution",
    "SessionEvent",
    "SessionEventKind",
    "SettingsProvider",
    "ShellCommand",
    "StaticSettingsProvider",
    "StopOutcome",
    "StopResult",
    "TerminalKind",
    "TerminalService",
    "TerminalSession",
    "TerminalSettings",
    "TerminalStatus",
]

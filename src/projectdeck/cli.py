"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging as py_logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from .config import AppConfig, StaticSettingsProvider, load_config
from .errors import ExitCode, ProjectDeckError, user_facing_error
from .localization import StringCatalog
from .logging import configure_logging, default_log_path
from .projects import InMemoryProjectStore
from .retry import PollPolicy
from .terminal.bridge import ProjectStatusBridge
from .terminal.dispatch import Dispatcher, QueueDispatcher
from .terminal.models import TerminalKind
from .terminal.output import OutputChange
from .terminal.service import SessionEvent, SessionEventKind, TerminalService
from .terminal.shell import build_shell_command

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
_VALID_TERMINALS = tuple(kind.value for kind in TerminalKind)
_VALID_PLATFORMS = ("nt", "posix")
_DRAIN_TIMEOUT_SECONDS = 0.1
_OUTPUT_JOIN_SECONDS = 2.0


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _terminal_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in {"pwsh", "cmd.exe", "gitbash", "bash", *_VALID_TERMINALS}:
        accepted = ", ".join(_VALID_TERMINALS)
        raise argparse.ArgumentTypeError(f"--terminal must be one of: {accepted}")
    return TerminalKind.parse(normalized).value


def _env_type(value: str) -> tuple[str, str]:
    name, separator, assigned = value.partition("=")
    if not separator or not name.strip():
        raise argparse.ArgumentTypeError("--env must look like NAME=VALUE")
    return name.strip(), assigned


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--terminal", type=_terminal_type, default=None)
    parser.add_argument("--env", type=_env_type, action="append", default=[], metavar="NAME=VALUE")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="projectdeck")
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    subparsers = parser.add_subparsers(dest="action", required=True)

    run_parser = subparsers.add_parser("run", help="Run a command in a managed terminal session")
    run_parser.add_argument("--cwd", default="")
    run_parser.add_argument("--project", default="cli")
    run_parser.add_argument("--no-timestamps", action="store_true")
    run_parser.add_argument("--strings", type=Path, default=None, help="JSON catalog of terminal messages")
    _add_common_arguments(run_parser)

    show_parser = subparsers.add_parser("show-command", help="Print the shell invocation for a command")
    show_parser.add_argument("--platform", choices=_VALID_PLATFORMS, default=None)
    _add_common_arguments(show_parser)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def command_text(namespace: argparse.Namespace) -> str:
    parts = list(namespace.command)
    if parts and parts[0] == "--":
        parts = parts[1:]
    return " ".join(parts)


def resolve_config(namespace: argparse.Namespace) -> AppConfig:
    config = load_config(namespace.config)
    if namespace.terminal:
        config.preferred_terminal = namespace.terminal
    if getattr(namespace, "no_timestamps", False):
        config.show_timestamps = False
    return config


def build_service(
    config: AppConfig,
    *,
    dispatcher: Dispatcher | None = None,
    strings: StringCatalog | None = None,
    register_atexit: bool = True,
) -> TerminalService:
    return TerminalService(
        settings_provider=StaticSettingsProvider(config.terminal_settings()),
        strings=strings,
        dispatcher=dispatcher,
        resolve_policy=PollPolicy(
            max_attempts=config.resolve_attempts,
            interval_seconds=config.resolve_interval_seconds,
        ),
        stop_grace_seconds=config.stop_grace_seconds,
        max_output_lines=config.max_output_lines,
        register_atexit=register_atexit,
    )


def show_command(namespace: argparse.Namespace, stdout: TextIO) -> int:
    config = resolve_config(namespace)
    command = build_shell_command(
        config.preferred_terminal,
        dict(namespace.env),
        command_text(namespace),
        use_utf8_code_page=config.use_cmd_chcp65001,
        platform_name=namespace.platform,
    )
    print(command.executable, file=stdout)
    print(command.argument_string, file=stdout)
    return int(ExitCode.SUCCESS)


def run_session(namespace: argparse.Namespace, stdout: TextIO) -> int:
    config = resolve_config(namespace)
    strings = StringCatalog.from_json(namespace.strings) if namespace.strings else None
    dispatcher = QueueDispatcher()
    service = build_service(config, dispatcher=dispatcher, strings=strings)
    store = InMemoryProjectStore([namespace.project])
    bridge = ProjectStatusBridge(service, store).attach()
    exit_codes: list[int | None] = []
    finished: list[SessionEventKind] = []

    def _on_event(event: SessionEvent) -> None:
        if event.kind == SessionEventKind.EXITED:
            exit_codes.append(event.exit_code)
        if event.kind in {SessionEventKind.EXITED, SessionEventKind.STOPPED}:
            finished.append(event.kind)

    def _write(change: OutputChange) -> None:
        for entry in change.entries:
            stdout.write(entry if entry.endswith("\n") else f"{entry}\n")
        stdout.flush()

    service.subscribe(_on_event)
    session = service.create_session(namespace.project, namespace.cwd, command_text(namespace), dict(namespace.env))
    session.output.subscribe(_write)
    try:
        started = asyncio.run(service.start_session(session))
        dispatcher.run_pending()
        if not started:
            return int(ExitCode.LAUNCH_ERROR)
        try:
            while not finished or not session.wait_for_output(0):
                dispatcher.run_pending(timeout=_DRAIN_TIMEOUT_SECONDS)
        except KeyboardInterrupt:
            service.stop_session(session)
            session.wait_for_output(_OUTPUT_JOIN_SECONDS)
        dispatcher.run_pending()
    finally:
        bridge.detach()
        service.cleanup()
        dispatcher.run_pending()

    code = exit_codes[-1] if exit_codes else None
    if code not in (None, 0):
        raise ProjectDeckError(
            f"Command exited with code {code}",
            code=ExitCode.PROCESS_ERROR,
            hint="Inspect the command output above.",
        )
    return int(ExitCode.SUCCESS)


def main(argv: Sequence[str] | None = None, *, stdout: TextIO | None = None) -> int:
    out = stdout or sys.stdout
    log_path = default_log_path()
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            py_logging.getLogger("projectdeck").warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        if namespace.action == "show-command":
            return show_command(namespace, out)
        if not command_text(namespace).strip():
            raise ProjectDeckError(
                "No command given.",
                code=ExitCode.INVALID_ARGS,
                hint="Pass the command after --, for example: projectdeck run -- npm start",
            )
        logger.debug("Starting run flow project=%s", namespace.project)
        return run_session(namespace, out)
    except ProjectDeckError as exc:
        logger.error(
            "Handled ProjectDeckError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)

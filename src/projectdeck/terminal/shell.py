"""Shell command construction with per-shell environment escaping."""

from __future__ import annotations

import logging as py_logging
import os
import re
import shlex
import shutil
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from projectdeck.terminal.models import TerminalKind, copy_environment

logger = py_logging.getLogger(__name__)

EMPTY_COMMAND_MESSAGE = "No command to run"
POWERSHELL_SEPARATOR = "; "
CHAIN_SEPARATOR = " && "
POWERSHELL_UTF8_PREAMBLE = (
    "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8",
    "$OutputEncoding = [System.Text.Encoding]::UTF8",
)
CMD_UTF8_PREAMBLE = "chcp 65001 >nul"

_POWERSHELL_SIMPLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_BASH_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_GIT_BASH_CANDIDATES = (
    ("ProgramFiles", "Git", "bin", "bash.exe"),
    ("ProgramW6432", "Git", "bin", "bash.exe"),
    ("ProgramFiles(x86)", "Git", "bin", "bash.exe"),
    ("LOCALAPPDATA", "Programs", "Git", "bin", "bash.exe"),
)

Which = Callable[[str], "str | None"]


@dataclass(frozen=True)
class ShellCommand:
    kind: TerminalKind
    executable: str
    arguments: tuple[str, ...]
    script: str
    argument_string: str
    popen_args: str | tuple[str, ...]

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.arguments]


def escape_powershell(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def escape_cmd(value: str) -> str:
    return value.replace('"', '\\"')


def escape_bash(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def powershell_assignment(name: str, value: str) -> str:
    target = f"$env:{name}" if _POWERSHELL_SIMPLE_NAME.match(name) else "${env:" + name.replace("}", "`}") + "}"
    return f"{target} = {escape_powershell(value)}"


def cmd_assignment(name: str, value: str) -> str:
    return f'set "{name}={escape_cmd(value)}"'


def bash_assignment(name: str, value: str) -> str | None:
    if not _BASH_NAME.match(name):
        return None
    return f"export {name}={escape_bash(value)}"


def _is_windows(platform_name: str | None) -> bool:
    return (platform_name or os.name).strip().lower() == "nt"


def resolve_executable(
    kind: TerminalKind,
    *,
    platform_name: str | None = None,
    which: Which = shutil.which,
    environ: Mapping[str, str] | None = None,
) -> str:
    env = os.environ if environ is None else environ
    windows = _is_windows(platform_name)
    if kind == TerminalKind.CMD:
        if windows:
            return env.get("ComSpec", "").strip() or "cmd.exe"
        return which("cmd.exe") or "cmd.exe"
    if kind == TerminalKind.GIT_BASH:
        if windows:
            for root_var, *parts in _GIT_BASH_CANDIDATES:
                root = env.get(root_var, "").strip()
                if root:
                    candidate = Path(root).joinpath(*parts)
                    if candidate.is_file():
                        return str(candidate)
            return which("bash.exe") or "bash.exe"
        return which("bash") or "/bin/bash"
    if windows:
        return "powershell.exe"
    return which("pwsh") or "pwsh"


def _render_assignments(kind: TerminalKind, environment: Mapping[str, str]) -> list[str]:
    statements: list[str] = []
    for name, value in environment.items():
        if kind == TerminalKind.CMD:
            statements.append(cmd_assignment(name, value))
        elif kind == TerminalKind.GIT_BASH:
            statement = bash_assignment(name, value)
            if statement is None:
                logger.debug("shell-assign skipped name=%s kind=%s (process env only)", name, kind.value)
                continue
            statements.append(statement)
        else:
            statements.append(powershell_assignment(name, value))
    return statements


def _empty_command(kind: TerminalKind) -> str:
    if kind == TerminalKind.CMD:
        return f"echo {EMPTY_COMMAND_MESSAGE}"
    if kind == TerminalKind.GIT_BASH:
        return f"echo {escape_bash(EMPTY_COMMAND_MESSAGE)}"
    return f"Write-Output {escape_powershell(EMPTY_COMMAND_MESSAGE)}"


def build_script(
    kind: TerminalKind,
    environment: Mapping[str, str],
    command: str,
    *,
    use_utf8_code_page: bool = True,
) -> str:
    """Render the statement list a shell of ``kind`` runs: preamble, assignments, command."""
    final_command = command.strip() or _empty_command(kind)
    statements = _render_assignments(kind, environment)
    if kind == TerminalKind.CMD:
        preamble = [CMD_UTF8_PREAMBLE] if use_utf8_code_page else []
        return CHAIN_SEPARATOR.join([*preamble, *statements, final_command])
    if kind == TerminalKind.GIT_BASH:
        return CHAIN_SEPARATOR.join([*statements, final_command])
    return POWERSHELL_SEPARATOR.join([*POWERSHELL_UTF8_PREAMBLE, *statements, final_command])


def build_shell_command(
    kind: TerminalKind | str,
    environment: Mapping[str, str] | None,
    command: str,
    *,
    use_utf8_code_page: bool = True,
    platform_name: str | None = None,
    which: Which = shutil.which,
) -> ShellCommand:
    resolved_kind = TerminalKind.parse(kind)
    env = copy_environment(environment)
    script = build_script(resolved_kind, env, command, use_utf8_code_page=use_utf8_code_page)
    executable = resolve_executable(resolved_kind, platform_name=platform_name, which=which)
    windows = _is_windows(platform_name)

    if resolved_kind == TerminalKind.CMD:
        arguments: tuple[str, ...] = ("/d", "/s", "/c", script)
        # cmd.exe parses its own command line; /s strips exactly the outer quotes.
        argument_string = f'/d /s /c "{script}"'
        popen_args: str | tuple[str, ...] = (
            f"{subprocess.list2cmdline([executable])} {argument_string}"
            if windows
            else (executable, *arguments)
        )
    elif resolved_kind == TerminalKind.GIT_BASH:
        arguments = ("-c", script)
        argument_string = _join_arguments(arguments, windows=windows)
        popen_args = (executable, *arguments)
    else:
        arguments = ("-NoLogo", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script)
        argument_string = _join_arguments(arguments, windows=windows)
        popen_args = (executable, *arguments)

    return ShellCommand(
        kind=resolved_kind,
        executable=executable,
        arguments=arguments,
        script=script,
        argument_string=argument_string,
        popen_args=popen_args,
    )


def _join_arguments(arguments: tuple[str, ...], *, windows: bool) -> str:
    if windows:
        return subprocess.list2cmdline(arguments)
    return shlex.join(arguments)

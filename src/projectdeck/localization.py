"""Human-readable terminal log strings with key fallback."""

from __future__ import annotations

import json
import logging as py_logging
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from projectdeck.errors import ExitCode, ProjectDeckError

logger = py_logging.getLogger(__name__)

DEFAULT_STRINGS: dict[str, str] = {
    "Terminal_Running": "Running",
    "Terminal_Stopped": "Stopped",
    "Terminal_Starting": "Starting",
    "Terminal_StartFailed": "Start Failed",
    "Terminal_AlreadyRunning": "Terminal is already running",
    "Terminal_Launching": "Starting...",
    "Terminal_StartCommand": "Start command: {command}",
    "Terminal_WorkingDirectory": "Working directory: {path}",
    "Terminal_Shell": "Shell: {executable} ({kind})",
    "Terminal_Started": "Terminal started",
    "Terminal_ProcessResolved": "Tracking application process {name} (PID {pid}) instead of shell (PID {shell_pid})",
    "Terminal_ProcessExited": "Process exited with code {code}",
    "Terminal_ShellResumed": "Application process {name} (PID {pid}) exited with code {code}; tracking shell (PID {shell_pid})",
    "Terminal_StartFailedMessage": "Start failed: {error}",
    "Terminal_StartErrorTitle": "Terminal start error",
    "Terminal_StopEscalated": "Process tree did not exit within {seconds}s, forcing termination (PID {pid})",
    "Terminal_StopFailedMessage": "Stop failed: {error}",
    "Terminal_StopErrorTitle": "Terminal stop error",
    "Terminal_ForceStopped": "Terminal force stopped",
}


class StringLookup(Protocol):
    def get_string(self, key: str) -> str: ...


class StringCatalog:
    """Key/value catalog layered over the built-in English strings."""

    def __init__(self, overrides: Mapping[str, str] | None = None) -> None:
        self._strings = dict(DEFAULT_STRINGS)
        if overrides:
            self._strings.update({str(key): str(value) for key, value in overrides.items()})

    @classmethod
    def from_json(cls, path: str | Path) -> StringCatalog:
        resolved = Path(path).expanduser()
        try:
            payload = json.loads(resolved.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ProjectDeckError(
                f"Cannot load string catalog: {resolved}",
                code=ExitCode.CONFIG_ERROR,
                hint=str(exc) or "Provide a JSON object of key/value strings.",
            ) from exc
        if not isinstance(payload, dict):
            raise ProjectDeckError(
                f"String catalog must be a JSON object: {resolved}",
                code=ExitCode.CONFIG_ERROR,
                hint="Use {\"key\": \"text\"} entries.",
            )
        return cls({key: value for key, value in payload.items() if isinstance(value, str)})

    def get_string(self, key: str) -> str:
        return self._strings.get(key, key)


def format_string(lookup: StringLookup, key: str, **values: object) -> str:
    """Look up ``key`` and fill its placeholders; broken templates are returned as-is."""
    try:
        template = lookup.get_string(key)
    except Exception:
        logger.debug("string lookup failed key=%s", key, exc_info=True)
        template = key
    if not values:
        return template
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError):
        return template

"""XDG config loading/saving and the terminal settings provider."""

from __future__ import annotations

import os
import sys
from contextlib import suppress
from pathlib import Path
from typing import Literal, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from projectdeck.terminal.models import (
    SettingsProvider,
    StaticSettingsProvider,
    TerminalKind,
    TerminalSettings,
)
from projectdeck.terminal.output import DEFAULT_MAX_OUTPUT_LINES
from projectdeck.terminal.process_tree import DEFAULT_STOP_GRACE_SECONDS

__all__ = [
    "AppConfig",
    "ConfigSettingsProvider",
    "SettingsProvider",
    "StaticSettingsProvider",
    "get_config_path",
    "load_config",
    "save_config",
]

DEFAULT_CONFIG_PATH = Path("~/.config/projectdeck/config.toml").expanduser()
DEFAULT_TERMINAL: Literal["powershell", "cmd", "git-bash"] = "powershell"
DEFAULT_RESOLVE_ATTEMPTS = 10
DEFAULT_RESOLVE_INTERVAL_SECONDS = 0.3
TERMINAL_ENV = "PROJECTDECK_TERMINAL"

_GRACE_RANGE = (0.05, 30.0)
_ATTEMPTS_RANGE = (1, 50)
_INTERVAL_RANGE = (0.05, 5.0)
_OUTPUT_LINES_RANGE = (100, 100_000)


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    preferred_terminal: Literal["powershell", "cmd", "git-bash"] = DEFAULT_TERMINAL
    use_cmd_chcp65001: bool = True
    show_timestamps: bool = True
    stop_grace_seconds: float = Field(default=DEFAULT_STOP_GRACE_SECONDS, ge=_GRACE_RANGE[0], le=_GRACE_RANGE[1])
    resolve_attempts: int = Field(default=DEFAULT_RESOLVE_ATTEMPTS, ge=_ATTEMPTS_RANGE[0], le=_ATTEMPTS_RANGE[1])
    resolve_interval_seconds: float = Field(
        default=DEFAULT_RESOLVE_INTERVAL_SECONDS,
        ge=_INTERVAL_RANGE[0],
        le=_INTERVAL_RANGE[1],
    )
    max_output_lines: int = Field(
        default=DEFAULT_MAX_OUTPUT_LINES,
        ge=_OUTPUT_LINES_RANGE[0],
        le=_OUTPUT_LINES_RANGE[1],
    )

    @field_validator("preferred_terminal", mode="before")
    @classmethod
    def _normalize_terminal(cls, value: object) -> str:
        return TerminalKind.parse(value).value

    def terminal_settings(self) -> TerminalSettings:
        return TerminalSettings(
            preferred_terminal=TerminalKind.parse(self.preferred_terminal),
            use_utf8_code_page=self.use_cmd_chcp65001,
            show_timestamps=self.show_timestamps,
        )


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _number_in_range(value: object, bounds: tuple[float, float]) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return bounds[0] <= value <= bounds[1]


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    preferred_terminal = raw.get("preferred_terminal", cfg.preferred_terminal)
    if isinstance(preferred_terminal, str):
        cfg.preferred_terminal = cast(
            Literal["powershell", "cmd", "git-bash"],
            TerminalKind.parse(preferred_terminal).value,
        )
    env_terminal = os.getenv(TERMINAL_ENV, "").strip()
    if env_terminal:
        cfg.preferred_terminal = cast(
            Literal["powershell", "cmd", "git-bash"],
            TerminalKind.parse(env_terminal).value,
        )

    for flag in ("use_cmd_chcp65001", "show_timestamps"):
        value = raw.get(flag)
        if isinstance(value, bool):
            setattr(cfg, flag, value)

    stop_grace = raw.get("stop_grace_seconds")
    if _number_in_range(stop_grace, _GRACE_RANGE):
        cfg.stop_grace_seconds = float(cast(float, stop_grace))

    attempts = raw.get("resolve_attempts")
    if isinstance(attempts, int) and _number_in_range(attempts, _ATTEMPTS_RANGE):
        cfg.resolve_attempts = attempts

    interval = raw.get("resolve_interval_seconds")
    if _number_in_range(interval, _INTERVAL_RANGE):
        cfg.resolve_interval_seconds = float(cast(float, interval))

    max_lines = raw.get("max_output_lines")
    if isinstance(max_lines, int) and _number_in_range(max_lines, _OUTPUT_LINES_RANGE):
        cfg.max_output_lines = max_lines

    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"{name} = {_toml_scalar(value)}"
        for name, value in config.model_dump().items()
    ]
    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved


class ConfigSettingsProvider:
    """Read terminal settings from the config file on every request."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = get_config_path(path)

    async def get_settings(self) -> TerminalSettings:
        return load_config(self.path).terminal_settings()

"""Application logging helpers."""

from __future__ import annotations

import logging as py_logging
import sys
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any, TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
ROOT_LOGGER_NAME = "projectdeck"
DEFAULT_LOG_PATH = Path("~/.config/projectdeck/logs/projectdeck.log")
_FALLBACK_LOG_PATH = Path(".projectdeck/logs/projectdeck.log")
# Pump and exit-watch thread names carry the session id prefix.
_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d [%(threadName)s] %(message)s"


def resolve_level(level: str) -> int:
    return LOG_LEVELS.get(level.strip().upper(), py_logging.INFO)


def _absolute(path: Path, fallback: Path) -> Path:
    try:
        expanded = path.expanduser()
    except RuntimeError:
        expanded = fallback
    return expanded if expanded.is_absolute() else expanded.resolve()


def default_log_path() -> Path:
    return _absolute(DEFAULT_LOG_PATH, Path.cwd() / _FALLBACK_LOG_PATH)


def _open_file_handler(log_file: str | Path) -> py_logging.Handler | None:
    path = _absolute(Path(log_file), Path(log_file))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return py_logging.FileHandler(path, encoding="utf-8")
    except OSError:
        return None


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    """(Re)configure the package logger: console at ``level``, optional file at DEBUG."""
    resolved = resolve_level(level)
    logger = py_logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(resolved)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    formatter = py_logging.Formatter(_FORMAT)
    console = py_logging.StreamHandler(stream or sys.stderr)
    handlers: list[tuple[py_logging.Handler, int]] = [(console, resolved)]
    if log_file:
        file_handler = _open_file_handler(log_file)
        if file_handler is not None:
            handlers.append((file_handler, py_logging.DEBUG))
    for handler, handler_level in handlers:
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


class SessionLoggerAdapter(py_logging.LoggerAdapter):
    """Prefix records with the owning terminal session and project."""

    def __init__(self, logger: py_logging.Logger, *, session_id: str, project_name: str) -> None:
        super().__init__(logger, {"session_id": session_id, "project_name": project_name})

    def process(
        self,
        msg: object,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[object, MutableMapping[str, Any]]:
        extra = self.extra or {}
        session_id = str(extra.get("session_id", ""))[:8]
        project_name = extra.get("project_name", "")
        return f"session={session_id} project={project_name} {msg}", kwargs


def session_logger(name: str, *, session_id: str, project_name: str) -> SessionLoggerAdapter:
    return SessionLoggerAdapter(
        py_logging.getLogger(name),
        session_id=session_id,
        project_name=project_name,
    )

"""Deterministic error model, exit code contract and error display sinks."""

from __future__ import annotations

import logging as py_logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Protocol

logger = py_logging.getLogger(__name__)


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    LAUNCH_ERROR = 5
    PROCESS_ERROR = 6
    VALIDATION_ERROR = 7
    UNSUPPORTED_PLATFORM = 8


@dataclass
class ProjectDeckError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."


class ErrorDisplay(Protocol):
    def show_error(self, message: str, title: str = "") -> None: ...

    def show_exception(self, exc: BaseException, title: str = "") -> None: ...


class LoggingErrorDisplay:
    """Error sink for headless hosts: reports through the application log."""

    def show_error(self, message: str, title: str = "") -> None:
        logger.error("%s: %s", title or "Error", message)

    def show_exception(self, exc: BaseException, title: str = "") -> None:
        if isinstance(exc, ProjectDeckError):
            logger.error("%s: %s", title or "Error", user_facing_error(exc.message, hint=exc.hint))
            return
        logger.error("%s: %s", title or "Error", exc, exc_info=exc)

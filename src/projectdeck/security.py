"""Log sanitization for commands that carry environment values."""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence

DEFAULT_LOG_TRUNCATE_LIMIT = 700
REDACTED = "***"

SECRET_NAME_PATTERN: re.Pattern[str] = re.compile(
    r"(TOKEN|SECRET|PASSW(OR)?D|API_?KEY|PRIVATE_?KEY|CREDENTIAL|AUTH)",
    re.IGNORECASE,
)
URL_CREDENTIAL_PATTERN: re.Pattern[str] = re.compile(r"(https?://)([^/\s:@]+):([^@\s]+)@")


def truncate_log(value: str, limit: int = DEFAULT_LOG_TRUNCATE_LIMIT) -> str:
    """Truncate log text to the specified limit with ellipsis."""
    value = value.strip()
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)] + "..."


def is_secret_name(name: str) -> bool:
    return bool(SECRET_NAME_PATTERN.search(name))


def redact_environment(environment: Mapping[str, str]) -> dict[str, str]:
    """Return a copy with secret-looking values masked."""
    return {
        name: (REDACTED if is_secret_name(name) and value else value)
        for name, value in environment.items()
    }


def redact_text(text: str, environment: Mapping[str, str]) -> str:
    """Mask secret environment values and URL credentials inside ``text``."""
    if not text:
        return ""
    sanitized = text
    secrets = sorted(
        (value for name, value in environment.items() if value and is_secret_name(name)),
        key=len,
        reverse=True,
    )
    for value in secrets:
        sanitized = sanitized.replace(value, REDACTED)
    return URL_CREDENTIAL_PATTERN.sub(r"\1***:***@", sanitized)


def command_for_log(args: Sequence[str], environment: Mapping[str, str] | None = None) -> str:
    """Return a shell-safe, redacted command string bounded for logging."""
    if not args:
        return ""
    joined = " ".join(shlex.quote(part) for part in args)
    return truncate_log(redact_text(joined, environment or {}))

"""Bounded polling helpers for probes that may not succeed yet."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


class PollAborted(Exception):
    """Raised by a probe when further attempts cannot succeed."""


@dataclass(frozen=True)
class PollPolicy:
    max_attempts: int = 10
    interval_seconds: float = 0.3
    multiplier: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive: {self.max_attempts}")
        if self.interval_seconds < 0:
            raise ValueError(f"interval_seconds cannot be negative: {self.interval_seconds}")


async def poll_until(
    probe: Callable[[], T | None],
    *,
    policy: PollPolicy,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T | None:
    """Call ``probe`` until it returns a value or the attempt budget runs out.

    ``None`` means "not yet"; :class:`PollAborted` ends polling early. The
    delay happens between attempts only, so a first-try success never sleeps.
    """
    delay = policy.interval_seconds
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = probe()
        except PollAborted:
            return None
        if result is not None:
            return result
        if attempt >= policy.max_attempts:
            break
        await sleep(delay)
        delay *= policy.multiplier
    return None

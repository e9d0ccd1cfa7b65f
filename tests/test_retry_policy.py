from __future__ import annotations

import asyncio

import pytest

from projectdeck.retry import PollAborted, PollPolicy, poll_until


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_poll_returns_first_result_without_sleeping() -> None:
    sleep = _RecordingSleep()

    result = asyncio.run(poll_until(lambda: "child", policy=PollPolicy(max_attempts=3), sleep=sleep))

    assert result == "child"
    assert sleep.delays == []


def test_poll_retries_until_probe_produces_value() -> None:
    attempts = {"count": 0}
    sleep = _RecordingSleep()

    def probe() -> str | None:
        attempts["count"] += 1
        return "ok" if attempts["count"] == 3 else None

    result = asyncio.run(poll_until(probe, policy=PollPolicy(max_attempts=5, interval_seconds=0.2), sleep=sleep))

    assert result == "ok"
    assert sleep.delays == [0.2, 0.2]


def test_poll_gives_up_after_budget() -> None:
    sleep = _RecordingSleep()

    result = asyncio.run(
        poll_until(lambda: None, policy=PollPolicy(max_attempts=3, interval_seconds=0.1, multiplier=2.0), sleep=sleep)
    )

    assert result is None
    assert sleep.delays == [0.1, 0.2]


def test_poll_stops_when_probe_aborts() -> None:
    attempts = {"count": 0}

    def probe() -> str | None:
        attempts["count"] += 1
        raise PollAborted

    result = asyncio.run(poll_until(probe, policy=PollPolicy(max_attempts=5), sleep=_RecordingSleep()))

    assert result is None
    assert attempts["count"] == 1


def test_poll_propagates_unexpected_errors() -> None:
    def probe() -> str | None:
        raise RuntimeError("probe broke")

    with pytest.raises(RuntimeError):
        asyncio.run(poll_until(probe, policy=PollPolicy(), sleep=_RecordingSleep()))


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"interval_seconds": -0.1}],
)
def test_invalid_policy_is_rejected(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        PollPolicy(**kwargs)  # type: ignore[arg-type]

from __future__ import annotations

import asyncio
import os
import shutil
import threading
from pathlib import Path

import psutil
import pytest

from projectdeck.retry import PollPolicy
from projectdeck.terminal.models import (
    StaticSettingsProvider,
    TerminalKind,
    TerminalSession,
    TerminalSettings,
    TerminalStatus,
)
from projectdeck.terminal.process_tree import StopOutcome, is_process_alive
from projectdeck.terminal.service import SessionEvent, SessionEventKind, TerminalService

pytestmark = pytest.mark.skipif(
    os.name == "nt" or shutil.which("bash") is None,
    reason="requires a POSIX bash",
)

_WAIT_SECONDS = 10.0


def _service(*, grace: float = 1.0) -> TerminalService:
    return TerminalService(
        settings_provider=StaticSettingsProvider(
            TerminalSettings(preferred_terminal=TerminalKind.GIT_BASH, show_timestamps=False)
        ),
        resolve_policy=PollPolicy(max_attempts=20, interval_seconds=0.1),
        stop_grace_seconds=grace,
    )


class _EventLatch:
    def __init__(self, service: TerminalService, *kinds: SessionEventKind) -> None:
        self.kinds = set(kinds)
        self.events: list[SessionEvent] = []
        self._hit = threading.Event()
        service.subscribe(self._on_event)

    def _on_event(self, event: SessionEvent) -> None:
        self.events.append(event)
        if event.kind in self.kinds:
            self._hit.set()

    def wait(self) -> SessionEvent:
        assert self._hit.wait(_WAIT_SECONDS), [event.kind for event in self.events]
        return next(event for event in self.events if event.kind in self.kinds)


def _run_to_exit(service: TerminalService, session: TerminalSession, env=None) -> SessionEvent:
    latch = _EventLatch(service, SessionEventKind.EXITED)
    assert asyncio.run(service.start_session(session, env)) is True
    event = latch.wait()
    assert session.wait_for_output(_WAIT_SECONDS)
    return event


def test_command_output_and_exit_code_are_captured(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("echo", str(tmp_path), "echo hello && exit 3")
    try:
        event = _run_to_exit(service, session)
    finally:
        service.cleanup()

    text = session.output.text()
    assert "hello\n" in text
    assert f"Working directory: {tmp_path}" in text
    assert event.exit_code == 3
    assert session.status == TerminalStatus.STOPPED
    shell = session.launched_process
    assert shell.stdout.closed and shell.stderr.closed  # type: ignore[attr-defined]
    assert [e.kind for e in service.list_events()][:3] == [
        SessionEventKind.CREATED,
        SessionEventKind.STARTING,
        SessionEventKind.STARTED,
    ]


def test_session_and_override_environment_reach_the_shell(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("env", str(tmp_path), 'echo "[$FOO] [$ONLY_OVERRIDE]"', {"FOO": "bar baz"})
    try:
        _run_to_exit(service, session, {"ONLY_OVERRIDE": "it's"})
    finally:
        service.cleanup()

    assert "[bar baz] [it's]" in session.output.text()
    assert session.environment == {"FOO": "bar baz"}


def test_stderr_is_captured(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("stderr", str(tmp_path), "echo oops 1>&2")
    try:
        _run_to_exit(service, session)
    finally:
        service.cleanup()

    assert "oops\n" in session.output.text()


def test_application_child_is_tracked_and_stopped(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("sleeper", str(tmp_path), "sleep 30; echo never")
    latch = _EventLatch(service, SessionEventKind.STOPPED)
    try:
        assert asyncio.run(service.start_session(session)) is True
        assert session.is_running
        tracked = session.process
        assert isinstance(tracked, psutil.Process)
        assert tracked.name() == "sleep"

        result = service.stop_session(session)
        latch.wait()
    finally:
        service.cleanup()

    assert result.outcome == StopOutcome.GRACEFUL
    assert session.status == TerminalStatus.STOPPED
    assert session.process is None
    assert not is_process_alive(tracked)
    assert "\nnever\n" not in session.output.text()
    assert "Terminal force stopped" in session.output.text()


def test_term_ignoring_tree_is_force_killed(tmp_path: Path) -> None:
    service = _service(grace=0.3)
    session = service.create_session("stubborn", str(tmp_path), "trap '' TERM; sleep 30; echo never")
    try:
        assert asyncio.run(service.start_session(session)) is True
        shell = session.launched_process

        result = service.stop_session(session)
    finally:
        service.cleanup()

    assert result.outcome == StopOutcome.FORCED
    assert "forcing termination" in session.output.text()
    assert shell is not None and shell.wait(timeout=_WAIT_SECONDS) is not None  # type: ignore[attr-defined]


def test_missing_working_directory_fails_start(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("missing", str(tmp_path / "absent"), "echo hi")
    latch = _EventLatch(service, SessionEventKind.START_FAILED)

    assert asyncio.run(service.start_session(session)) is False

    event = latch.wait()
    assert session.status == TerminalStatus.START_FAILED
    assert "Working directory not found" in event.message
    assert "Start failed:" in session.output.text()


def test_restart_after_exit_launches_fresh_process(tmp_path: Path) -> None:
    service = _service()
    session = service.create_session("again", str(tmp_path), "echo ran-$((40 + 2))")
    try:
        _run_to_exit(service, session)
        first = session.launched_process
        _run_to_exit(service, session)
    finally:
        service.cleanup()

    assert session.output.text().count("ran-42\n") == 2
    assert session.launched_process is not first


def _wait_for(predicate, timeout: float = _WAIT_SECONDS) -> bool:
    pause = threading.Event()
    for _ in range(int(timeout / 0.05)):
        if predicate():
            return True
        pause.wait(0.05)
    return predicate()


def test_shell_that_outlives_its_child_stays_tracked(tmp_path: Path) -> None:
    service = _service(grace=0.5)
    session = service.create_session("chain", str(tmp_path), "sleep 1; sleep 30")
    try:
        assert asyncio.run(service.start_session(session)) is True
        first = session.process
        shell = session.launched_process
        assert isinstance(first, psutil.Process)
        assert first.name() == "sleep"

        assert _wait_for(lambda: session.process is shell)
        assert not is_process_alive(first)
        assert session.status == TerminalStatus.RUNNING
        assert is_process_alive(shell)
        assert _wait_for(lambda: "tracking shell" in session.output.text())

        assert asyncio.run(service.start_session(session)) is False
        assert session.launched_process is shell
    finally:
        service.cleanup()

    assert shell.wait(timeout=_WAIT_SECONDS) is not None  # type: ignore[attr-defined]
    assert not is_process_alive(shell)
    assert session.status == TerminalStatus.STOPPED

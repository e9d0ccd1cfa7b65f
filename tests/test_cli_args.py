from __future__ import annotations

import io
from contextlib import redirect_stderr
from pathlib import Path

import pytest

from projectdeck import cli
from projectdeck.config import TERMINAL_ENV
from projectdeck.errors import ExitCode, ProjectDeckError


@pytest.fixture(autouse=True)
def _no_terminal_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(TERMINAL_ENV, raising=False)
    monkeypatch.delenv("ComSpec", raising=False)


def _base(tmp_path: Path) -> list[str]:
    return ["--log-file", str(tmp_path / "projectdeck.log")]


def test_cli_help_includes_public_flags() -> None:
    parser = cli.build_parser()
    help_text = parser.format_help()
    assert "--log-level" in help_text
    assert "run" in help_text
    assert "show-command" in help_text

    run_help = parser.parse_args(["run", "--", "echo"])
    assert run_help.project == "cli"
    assert run_help.cwd == ""


def test_missing_subcommand_returns_invalid_args(tmp_path: Path) -> None:
    with redirect_stderr(io.StringIO()):
        assert cli.main(_base(tmp_path)) == int(ExitCode.INVALID_ARGS)


def test_invalid_env_assignment_is_rejected(tmp_path: Path) -> None:
    stream = io.StringIO()
    with redirect_stderr(stream):
        code = cli.main([*_base(tmp_path), "show-command", "--env", "NOVALUE", "--", "echo"])

    assert code == int(ExitCode.INVALID_ARGS)
    assert "NAME=VALUE" in stream.getvalue()


def test_unknown_terminal_is_rejected(tmp_path: Path) -> None:
    with redirect_stderr(io.StringIO()):
        code = cli.main([*_base(tmp_path), "show-command", "--terminal", "zsh", "--", "echo"])

    assert code == int(ExitCode.INVALID_ARGS)


def test_warning_alias_for_log_level_is_accepted(tmp_path: Path) -> None:
    out = io.StringIO()
    code = cli.main(
        ["--log-level", "warning", *_base(tmp_path), "show-command", "--terminal", "cmd", "--", "echo"],
        stdout=out,
    )

    assert code == 0


def test_show_command_renders_cmd_invocation_for_windows(tmp_path: Path) -> None:
    out = io.StringIO()
    code = cli.main(
        [
            *_base(tmp_path),
            "show-command",
            "--terminal",
            "cmd.exe",
            "--platform",
            "nt",
            "--config",
            str(tmp_path / "missing.toml"),
            "--env",
            "FOO=bar baz",
            "--",
            "npm",
            "start",
        ],
        stdout=out,
    )

    assert code == 0
    executable, arguments = out.getvalue().splitlines()
    assert executable == "cmd.exe"
    assert arguments == '/d /s /c "chcp 65001 >nul && set "FOO=bar baz" && npm start"'


def test_show_command_honours_code_page_setting_from_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text('preferred_terminal = "cmd"\nuse_cmd_chcp65001 = false\n', encoding="utf-8")
    out = io.StringIO()

    code = cli.main(
        [*_base(tmp_path), "show-command", "--platform", "nt", "--config", str(config_path), "--", "dir"],
        stdout=out,
    )

    assert code == 0
    assert out.getvalue().splitlines()[1] == '/d /s /c "dir"'


def test_run_without_command_returns_invalid_args(tmp_path: Path) -> None:
    stream = io.StringIO()
    with redirect_stderr(stream):
        code = cli.main([*_base(tmp_path), "run", "--config", str(tmp_path / "missing.toml")])

    assert code == int(ExitCode.INVALID_ARGS)
    assert "Next step" in stream.getvalue()


def test_project_deck_error_is_reported_to_stderr(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run_session(namespace, stdout):
        raise ProjectDeckError("Cannot launch pwsh", code=ExitCode.LAUNCH_ERROR, hint="Install PowerShell.")

    monkeypatch.setattr(cli, "run_session", fake_run_session)
    stream = io.StringIO()
    with redirect_stderr(stream):
        code = cli.main([*_base(tmp_path), "run", "--", "npm", "start"])

    assert code == int(ExitCode.LAUNCH_ERROR)
    assert "Install PowerShell." in stream.getvalue()


def test_unexpected_error_maps_to_runtime_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run_session(namespace, stdout):
        raise RuntimeError("boom")

    monkeypatch.setattr(cli, "run_session", fake_run_session)
    stream = io.StringIO()
    with redirect_stderr(stream):
        code = cli.main([*_base(tmp_path), "run", "--", "npm", "start"])

    assert code == int(ExitCode.RUNTIME_ERROR)
    assert "Unexpected runtime failure" in stream.getvalue()


def test_command_text_strips_leading_separator() -> None:
    namespace = cli.parse_args(["run", "--", "npm", "run", "dev"])

    assert cli.command_text(namespace) == "npm run dev"

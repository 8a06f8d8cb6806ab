"""Unit tests for the command-line entry point."""

import pytest

from gmail_mirror.cli import _build_parser, main
from gmail_mirror.config import get_settings


@pytest.fixture
def cli_env(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GMAIL_MIRROR_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.sqlite3'}")
    monkeypatch.setenv("GMAIL_MIRROR_CRON_SECRET", "s3cret")
    monkeypatch.delenv("GMAIL_MIRROR_REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_parser_requires_tokens_for_user_add() -> None:
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["user", "add", "me@example.com"])


def test_parser_reads_sync_run() -> None:
    parsed = _build_parser().parse_args(["sync", "run", "3"])

    assert parsed.command == "sync"
    assert parsed.sync_command == "run"
    assert parsed.user_id == 3


def test_add_user_then_show_status(cli_env, capsys) -> None:
    assert main(["db", "init"]) == 0
    assert main(["user", "add", "me@example.com", "--access-token", "a", "--refresh-token", "r"]) == 0
    assert main(["sync", "status", "1"]) == 0

    out = capsys.readouterr().out
    assert "Created user 1 <me@example.com>" in out
    assert "Last sync: never" in out


def test_status_for_unknown_user_fails(cli_env) -> None:
    assert main(["db", "init"]) == 0
    assert main(["sync", "status", "99"]) == 1


def test_scheduled_sync_requires_secret(cli_env, capsys) -> None:
    assert main(["sync", "scheduled"]) == 1
    assert main(["sync", "scheduled", "--secret", "wrong"]) == 1

    assert "Refusing scheduled sync" in capsys.readouterr().out

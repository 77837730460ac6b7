"""Tests for termote.cli (session resolution and exit codes)."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from termote import __version__, cli
from termote.relay.api import AgentInfo, RemoteSession
from termote.relay.errors import FatalError

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for var in ("TERMOTE_SERVER_URL", "TERMOTE_TOKEN", "TERMOTE_LOG_FILE", "TERMOTE_SESSION_ID"):
        monkeypatch.delenv(var, raising=False)


def start_args(tmp_path: Path, *extra: str) -> list[str]:
    return ["start", "--config", str(tmp_path / "none.json"), *extra]


class TestCli:
    def test_version(self) -> None:
        result = runner.invoke(cli.app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_session_url(self) -> None:
        assert cli.session_url("https://relay.test", "abc") == "https://relay.test/t/abc"

    def test_start_without_token(self, tmp_path: Path) -> None:
        result = runner.invoke(cli.app, start_args(tmp_path))
        assert result.exit_code == 1

    def test_already_connected_session_exits_zero(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def fake_fetch(server_url: str, token: str, session_id: str) -> RemoteSession:
            return RemoteSession(id=session_id, agent=AgentInfo(connected=True))

        async def fail_create(*args: object, **kwargs: object) -> str:
            raise AssertionError("must not create a session")

        monkeypatch.setenv("TERMOTE_SESSION_ID", "sess-1")
        monkeypatch.setattr(cli, "fetch_session", fake_fetch)
        monkeypatch.setattr(cli, "create_session", fail_create)
        result = runner.invoke(cli.app, start_args(tmp_path, "--token", "tok"))
        assert result.exit_code == 0

    def test_fatal_lookup_exits_one(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def fake_fetch(server_url: str, token: str, session_id: str) -> None:
            raise FatalError("Session not found: sess-1")

        monkeypatch.setenv("TERMOTE_SESSION_ID", "sess-1")
        monkeypatch.setattr(cli, "fetch_session", fake_fetch)
        result = runner.invoke(cli.app, start_args(tmp_path, "--token", "tok"))
        assert result.exit_code == 1


class TestResolveSession:
    async def test_inactive_session_is_reused(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_fetch(server_url: str, token: str, session_id: str) -> RemoteSession:
            return RemoteSession(id=session_id)

        monkeypatch.setenv("TERMOTE_SESSION_ID", "sess-1")
        monkeypatch.setattr(cli, "fetch_session", fake_fetch)
        config = cli.TermoteConfig(token="tok", server_url="https://relay.test")
        session = await cli._resolve_session(config, force=False, name=None)
        assert session == cli.Session("sess-1", "tok", "https://relay.test")

    async def test_unknown_session_creates_new(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_fetch(server_url: str, token: str, session_id: str) -> None:
            return None

        async def fake_create(server_url: str, token: str, shell: str, name: str | None = None) -> str:
            return "fresh"

        monkeypatch.setenv("TERMOTE_SESSION_ID", "sess-1")
        monkeypatch.setattr(cli, "fetch_session", fake_fetch)
        monkeypatch.setattr(cli, "create_session", fake_create)
        config = cli.TermoteConfig(token="tok")
        session = await cli._resolve_session(config, force=False, name=None)
        assert session is not None and session.id == "fresh"

    async def test_force_skips_lookup(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fail_fetch(*args: object) -> None:
            raise AssertionError("must not look up the session")

        async def fake_create(server_url: str, token: str, shell: str, name: str | None = None) -> str:
            assert name == "demo"
            return "forced"

        monkeypatch.setenv("TERMOTE_SESSION_ID", "sess-1")
        monkeypatch.setattr(cli, "fetch_session", fail_fetch)
        monkeypatch.setattr(cli, "create_session", fake_create)
        config = cli.TermoteConfig(token="tok")
        session = await cli._resolve_session(config, force=True, name="demo")
        assert session is not None and session.id == "forced"

"""Tests for the capture command line."""

import io
import json
import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from context_extender.config import get_settings
from context_extender.hooks.main import main, read_stdin


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> Iterator[None]:
    """Keep the developer's environment and home directory out of CLI runs."""
    monkeypatch.chdir(temp_dir)
    monkeypatch.setenv("CONTEXT_EXTENDER_DATABASE_PATH", str(temp_dir / "default.db"))
    monkeypatch.setenv("CONTEXT_EXTENDER_REAP_ON_SESSION_START", "false")
    monkeypatch.setenv("CONTEXT_EXTENDER_DEBUG", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def capture(
    db: Path, event: str, *extra: str, session: str | None = "abc", stdin: str = ""
) -> int:
    env = {"CLAUDE_SESSION_ID": session} if session else {}
    argv = ["capture", f"--event={event}", "--db", str(db), *extra]
    return main(argv, stdin=io.StringIO(stdin), env=env)


def rows(db: Path, query: str) -> list[tuple]:
    with sqlite3.connect(db) as conn:
        return conn.execute(query).fetchall()


class TestCapture:
    """Tests for successful capture runs."""

    def test_normal_session(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert capture(db_path, "session-start") == 0
        assert capture(db_path, "user-prompt", "--data", "hello") == 0
        assert capture(db_path, "claude-response", "--data", "hi there") == 0
        assert capture(db_path, "session-end") == 0

        out = capsys.readouterr().out.splitlines()
        assert out[0] == "session abc started"
        assert out[1] == "user prompt recorded for abc (seq 2)"
        assert out[2] == "response recorded for abc (seq 3)"
        assert out[3].startswith("session abc completed (4 events")

        assert rows(db_path, "SELECT status FROM sessions") == [("completed",)]
        assert rows(db_path, "SELECT sequence_num, event_type FROM events ORDER BY 1") == [
            (1, "session_start"),
            (2, "user_prompt"),
            (3, "claude_response"),
            (4, "session_end"),
        ]
        assert rows(db_path, "SELECT role, content FROM messages ORDER BY id") == [
            ("user", "hello"),
            ("assistant", "hi there"),
        ]
        assert rows(db_path, "SELECT count(*) FROM compiled_transcripts") == [(1,)]

    def test_snake_case_event_name(self, db_path: Path) -> None:
        assert capture(db_path, "session_start") == 0

    def test_session_id_flag(self, db_path: Path) -> None:
        assert capture(db_path, "session-start", "--session-id", "flagged", session=None) == 0
        assert rows(db_path, "SELECT id FROM sessions") == [("flagged",)]

    def test_host_payload_on_stdin(self, db_path: Path) -> None:
        payload = {"session_id": "host-1", "cwd": "/work/webshop", "source": "startup"}
        assert capture(db_path, "session-start", session=None, stdin=json.dumps(payload)) == 0
        assert capture(
            db_path,
            "user-prompt",
            session=None,
            stdin=json.dumps({"session_id": "host-1", "prompt": "add a cart"}),
        ) == 0

        (metadata,) = rows(db_path, "SELECT metadata FROM sessions WHERE id = 'host-1'")[0]
        assert json.loads(metadata)["project"] == "webshop"
        assert rows(db_path, "SELECT content FROM messages") == [("add a cart",)]

    def test_plain_stdin_is_payload(self, db_path: Path) -> None:
        capture(db_path, "session-start")
        assert capture(db_path, "user-prompt", stdin="typed prompt\n") == 0
        assert rows(db_path, "SELECT content FROM messages") == [("typed prompt\n",)]

    def test_context_request_output(
        self, db_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        capture(db_path, "session-start")
        capture(db_path, "user-prompt", "--data", "We must use type hints.")
        capsys.readouterr()

        assert capture(db_path, "context-request") == 0
        out = capsys.readouterr().out
        assert out.startswith("## Critical Context")
        assert "- We must use type hints." in out

    def test_default_database_from_settings(self, temp_dir: Path) -> None:
        env = {"CLAUDE_SESSION_ID": "abc"}
        assert main(["capture", "--event=session-start"], stdin=io.StringIO(""), env=env) == 0
        assert (temp_dir / "default.db").exists()


class TestFailures:
    """Tests for error categories and exit codes."""

    def test_event_after_end(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        capture(db_path, "session-start")
        capture(db_path, "session-end")
        capsys.readouterr()

        assert capture(db_path, "user-prompt", "--data", "late") == 6
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "error [SessionTerminal]" in captured.err
        assert rows(db_path, "SELECT count(*) FROM events") == [(2,)]

    def test_unresolved_session(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert capture(db_path, "user-prompt", "--data", "x", session=None) == 7
        assert "error [SessionUnresolved]" in capsys.readouterr().err

    def test_unknown_session(self, db_path: Path) -> None:
        assert capture(db_path, "user-prompt", "--data", "x", session="ghost") == 3

    def test_missing_payload(self, db_path: Path) -> None:
        capture(db_path, "session-start")
        assert capture(db_path, "user-prompt") == 11

    def test_unknown_event(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            capture(db_path, "session-restart")
        assert exc_info.value.code == 2
        assert "unknown event" in capsys.readouterr().err

    def test_invalid_setting(
        self,
        db_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("CONTEXT_EXTENDER_BUSY_TIMEOUT_SECONDS", "5")

        assert capture(db_path, "session-start") == 12
        err = capsys.readouterr().err
        assert err.startswith("error [Configuration]: invalid settings: BUSY_TIMEOUT_SECONDS")
        assert len(err.splitlines()) == 1
        assert not db_path.exists()

    def test_unknown_log_level(
        self,
        db_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("CONTEXT_EXTENDER_LOG_LEVEL", "LOUD")

        assert capture(db_path, "session-start") == 12
        err = capsys.readouterr().err
        assert err.startswith("error [Configuration]: cannot configure logging")
        assert len(err.splitlines()) == 1

    def test_unusable_database_path(self, temp_dir: Path) -> None:
        blocker = temp_dir / "file"
        blocker.write_text("not a directory", encoding="utf-8")
        assert capture(blocker / "nested" / "db.sqlite", "session-start") == 10


class TestReadStdin:
    """Tests for read_stdin function."""

    def test_json_object(self) -> None:
        assert read_stdin(io.StringIO('{"prompt": "hi"}')) == ({"prompt": "hi"}, None)

    def test_json_non_object_is_text(self) -> None:
        assert read_stdin(io.StringIO("[1, 2]")) == ({}, "[1, 2]")

    def test_empty(self) -> None:
        assert read_stdin(io.StringIO("  \n")) == ({}, None)
        assert read_stdin(None) == ({}, None)

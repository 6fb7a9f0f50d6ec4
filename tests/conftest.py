"""Pytest fixtures for context-extender tests."""

import tempfile
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from context_extender.config import Settings
from context_extender.core.dispatcher import run_hook
from context_extender.core.event_processor import HookRequest, HookResult
from context_extender.db.store import Store
from context_extender.models.events import HookKind

START = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


HookRunner = Callable[..., Awaitable[HookResult]]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "conversations.db"


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings(db_path: Path) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        DATABASE_PATH=db_path,
        REAP_ON_SESSION_START=False,
        STRIP_PREFIXES="-home-dev-",
    )


@pytest_asyncio.fixture
async def store(db_path: Path) -> AsyncIterator[Store]:
    """A migrated on-disk store in a temporary directory."""
    opened = await Store.open(db_path)
    yield opened
    await opened.close()


@pytest.fixture
def hook(store: Store, settings: Settings, clock: FixedClock) -> HookRunner:
    """Run one hook invocation the way a fresh process would.

    Each call builds a new processor (and so a new sequencer), like the CLI.
    """

    async def run(
        kind: HookKind,
        session_id: str | None = "abc",
        data: str | None = None,
        fields: dict[str, Any] | None = None,
        working_dir: str = "/home/dev/project",
    ) -> HookResult:
        env = {"CLAUDE_SESSION_ID": session_id} if session_id else {}
        request = HookRequest(
            kind=kind,
            data=data,
            fields=fields or {},
            env=env,
            working_dir=working_dir,
            pid=4242,
            clock_ns=1_700_000_000_000_000_000,
        )
        return await run_hook(store, request, settings, clock)

    return run


@pytest.fixture
def sample_jsonl_content() -> str:
    """Sample host transcript content."""
    lines = [
        '{"type": "user", "message": {"role": "user", "content": "Hello"}}',
        '{"type": "assistant", "message": {"role": "assistant", "model": "claude-test", '
        '"content": [{"type": "text", "text": "First response"}]}}',
        '{"type": "user", "message": {"role": "user", "content": "Another message"}}',
        '{"type": "assistant", "message": {"role": "assistant", "model": "claude-test", '
        '"content": [{"type": "text", "text": "Second response"}]}}',
        '{"type": "assistant", "message": {"role": "assistant", '
        '"content": [{"type": "tool_use", "name": "Read"}]}}',
        '{"type": "assistant", "message": {"role": "assistant", "model": "claude-test", '
        '"content": [{"type": "text", "text": "Final response with text"}]}}',
    ]
    return "\n".join(lines) + "\n"


@pytest.fixture
def sample_jsonl_file(temp_dir: Path, sample_jsonl_content: str) -> Path:
    jsonl_path = temp_dir / "session.jsonl"
    jsonl_path.write_text(sample_jsonl_content, encoding="utf-8")
    return jsonl_path

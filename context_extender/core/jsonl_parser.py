"""Read the host tool's JSONL transcript files."""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, TypedDict, cast

logger = logging.getLogger(__name__)


class ContentBlock(TypedDict, total=False):
    type: str
    text: str


class TranscriptMessage(TypedDict, total=False):
    role: str
    content: list[ContentBlock] | str
    model: str


class TranscriptRecord(TypedDict, total=False):
    """A single line of a host transcript file."""

    type: str
    message: TranscriptMessage
    isSidechain: bool


def iter_records(jsonl_path: str | Path) -> Iterator[TranscriptRecord]:
    """Yield JSON object lines, skipping blanks and malformed lines."""
    path = Path(jsonl_path).expanduser()
    if not path.exists():
        logger.debug(f"Transcript file not found: {jsonl_path}")
        return

    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record: Any = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict):
                    yield cast(TranscriptRecord, record)
    except OSError as e:
        logger.warning(f"Error reading transcript file {jsonl_path}: {e}")


def _texts(message: TranscriptMessage) -> list[str]:
    content = message.get("content", [])
    if isinstance(content, str):
        return [content] if content else []
    return [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ]


def get_last_assistant_response(jsonl_path: str | Path) -> tuple[str, str | None] | None:
    """Most recent assistant text in a transcript, with its model label.

    Sidechain (sub-agent) records are ignored.

    Args:
        jsonl_path: Path to the JSONL transcript file.

    Returns:
        ``(text, model)`` or None if the file is missing or has no assistant text.
    """
    last: tuple[str, str | None] | None = None
    for record in iter_records(jsonl_path):
        if record.get("type") != "assistant" or record.get("isSidechain"):
            continue
        message = record.get("message", {})
        if message.get("role") != "assistant":
            continue
        texts = _texts(message)
        if texts:
            last = (texts[-1], message.get("model"))
    return last

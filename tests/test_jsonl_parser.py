"""Tests for the host transcript reader."""

from pathlib import Path

from context_extender.core.jsonl_parser import get_last_assistant_response, iter_records


class TestGetLastAssistantResponse:
    """Tests for get_last_assistant_response function."""

    def test_returns_last_text_and_model(self, sample_jsonl_file: Path) -> None:
        """Should return the last assistant text with its model label."""
        result = get_last_assistant_response(sample_jsonl_file)
        assert result == ("Final response with text", "claude-test")

    def test_nonexistent_file_returns_none(self, temp_dir: Path) -> None:
        result = get_last_assistant_response(temp_dir / "nonexistent.jsonl")
        assert result is None

    def test_no_assistant_messages_returns_none(self, temp_dir: Path) -> None:
        jsonl_path = temp_dir / "user_only.jsonl"
        jsonl_path.write_text(
            '{"type": "user", "message": {"role": "user", "content": "Hello"}}\n',
            encoding="utf-8",
        )
        assert get_last_assistant_response(jsonl_path) is None

    def test_malformed_json_skipped(self, temp_dir: Path) -> None:
        """Malformed lines should not stop the scan."""
        jsonl_path = temp_dir / "malformed.jsonl"
        lines = [
            '{"type": "assistant", "message": {"role": "assistant", '
            '"content": [{"type": "text", "text": "Good response"}]}}',
            "{not valid json}",
            '{"type": "assistant", "message": {"role": "assistant", '
            '"content": [{"type": "text", "text": "Last good response"}]}}',
        ]
        jsonl_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        assert get_last_assistant_response(jsonl_path) == ("Last good response", None)

    def test_sidechain_records_ignored(self, temp_dir: Path) -> None:
        """Sub-agent output is not the response the user saw."""
        jsonl_path = temp_dir / "sidechain.jsonl"
        lines = [
            '{"type": "assistant", "message": {"role": "assistant", '
            '"content": [{"type": "text", "text": "Main answer"}]}}',
            '{"type": "assistant", "isSidechain": true, "message": {"role": "assistant", '
            '"content": [{"type": "text", "text": "Sub-agent notes"}]}}',
        ]
        jsonl_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        assert get_last_assistant_response(jsonl_path) == ("Main answer", None)

    def test_string_content(self, temp_dir: Path) -> None:
        jsonl_path = temp_dir / "plain.jsonl"
        jsonl_path.write_text(
            '{"type": "assistant", "message": {"role": "assistant", "content": "Plain text"}}\n',
            encoding="utf-8",
        )
        assert get_last_assistant_response(jsonl_path) == ("Plain text", None)


class TestIterRecords:
    """Tests for iter_records function."""

    def test_skips_blank_and_non_object_lines(self, temp_dir: Path) -> None:
        jsonl_path = temp_dir / "mixed.jsonl"
        jsonl_path.write_text('\n[1, 2]\n"text"\n{"type": "user"}\n', encoding="utf-8")
        assert list(iter_records(jsonl_path)) == [{"type": "user"}]

    def test_record_count(self, sample_jsonl_file: Path) -> None:
        assert len(list(iter_records(sample_jsonl_file))) == 6

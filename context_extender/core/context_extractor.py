"""Distils a session's messages into a critical-context summary.

Matching is driven by a marker catalogue (``markers.json``): each rule names a
summary field, the phrases that trigger it and, optionally, a fixed value and
a map key. Everything here is a pure function of its arguments.
"""

import json
import logging
import re
from collections.abc import Iterable, Sequence
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from context_extender.core.errors import PayloadInvalidError
from context_extender.models.context import CompressionSummary
from context_extender.models.events import Message

logger = logging.getLogger(__name__)

MAX_VALUE_LENGTH = 240

SCALAR_FIELDS = frozenset(
    {
        "project_label",
        "current_objective",
        "current_phase",
        "working_directory",
        "workflow_style",
        "communication_style",
        "trust_level",
    }
)
LIST_FIELDS = frozenset(
    {
        "technical_stack",
        "constraints",
        "completed_tasks",
        "pending_tasks",
        "active_problems",
        "errors_to_avoid",
        "approval_patterns",
        "avoid_topics",
    }
)
MAP_FIELDS = frozenset({"key_decisions", "user_preferences", "successful_solutions"})

SummaryField = Literal[
    "project_label",
    "current_objective",
    "current_phase",
    "working_directory",
    "workflow_style",
    "communication_style",
    "trust_level",
    "technical_stack",
    "constraints",
    "completed_tasks",
    "pending_tasks",
    "active_problems",
    "errors_to_avoid",
    "approval_patterns",
    "avoid_topics",
    "key_decisions",
    "user_preferences",
    "successful_solutions",
]

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|\n+")


class MarkerRule(BaseModel):
    field: SummaryField
    phrases: list[str] = Field(min_length=1)
    value: str | None = None
    key: str | None = None

    @model_validator(mode="after")
    def _check_key(self) -> "MarkerRule":
        if self.field in MAP_FIELDS and not self.key:
            raise ValueError(f"rule for {self.field} needs a key")
        if self.field not in MAP_FIELDS and self.key:
            raise ValueError(f"rule for {self.field} cannot take a key")
        self.phrases = [p.lower() for p in self.phrases]
        return self

    def matches(self, sentence: str) -> bool:
        lowered = sentence.lower()
        return any(phrase in lowered for phrase in self.phrases)


class CatalogueDefaults(BaseModel):
    project_label: str = ""
    technical_stack: list[str] = Field(default_factory=list)


class MarkerCatalogue(BaseModel):
    """Marker phrases and fallback values for the extractor."""

    defaults: CatalogueDefaults = Field(default_factory=CatalogueDefaults)
    rules: list[MarkerRule] = Field(default_factory=list)


def load_catalogue(path: Path | None = None) -> MarkerCatalogue:
    """Load a catalogue file, or the bundled one when ``path`` is None."""
    if path is None:
        return _bundled_catalogue()
    try:
        return MarkerCatalogue.model_validate_json(Path(path).expanduser().read_text("utf-8"))
    except OSError as exc:
        raise PayloadInvalidError(f"cannot read marker catalogue {path}: {exc}") from exc
    except ValidationError as exc:
        raise PayloadInvalidError(f"invalid marker catalogue {path}: {exc}") from exc


@lru_cache
def _bundled_catalogue() -> MarkerCatalogue:
    text = resources.files("context_extender.core").joinpath("markers.json").read_text("utf-8")
    return MarkerCatalogue.model_validate_json(text)


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_BOUNDARY.split(text) if part.strip()]


def _clip(sentence: str) -> str:
    return sentence[:MAX_VALUE_LENGTH].rstrip()


def _add_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)


def _put_keyed(mapping: dict[str, str], key: str, value: str) -> None:
    """Store under ``key``, then ``key-2``, ``key-3``... unless already present."""
    candidate = key
    suffix = 1
    while candidate in mapping:
        if mapping[candidate] == value:
            return
        suffix += 1
        candidate = f"{key}-{suffix}"
    mapping[candidate] = value


def extract_critical_context(
    messages: Iterable[Message | str],
    project_label: str | None = None,
    working_directory: str | None = None,
    catalogue: MarkerCatalogue | None = None,
) -> CompressionSummary:
    """Build a summary from messages in conversation order.

    Args:
        messages: Messages (or bare texts) oldest first.
        project_label: Label from session metadata, used when no message names one.
        working_directory: Working directory from session metadata.
        catalogue: Marker rules; the bundled catalogue when omitted.

    Returns:
        The summary. List fields keep first occurrences, scalar fields keep
        the last match, repeated map keys are suffixed.
    """
    catalogue = catalogue or load_catalogue()
    scalars: dict[str, str] = {}
    lists: dict[str, list[str]] = {name: [] for name in LIST_FIELDS}
    maps: dict[str, dict[str, str]] = {name: {} for name in MAP_FIELDS}

    for message in messages:
        text = message if isinstance(message, str) else message.content
        for sentence in split_sentences(text):
            for rule in catalogue.rules:
                if not rule.matches(sentence):
                    continue
                value = rule.value if rule.value is not None else _clip(sentence)
                if rule.field in LIST_FIELDS:
                    _add_unique(lists[rule.field], value)
                elif rule.field in MAP_FIELDS:
                    _put_keyed(maps[rule.field], rule.key or rule.field, value)
                else:
                    scalars[rule.field] = value

    if not scalars.get("project_label"):
        scalars["project_label"] = project_label or catalogue.defaults.project_label
    if working_directory and not scalars.get("working_directory"):
        scalars["working_directory"] = working_directory
    if not lists["technical_stack"]:
        lists["technical_stack"] = list(catalogue.defaults.technical_stack)

    fields: dict[str, Any] = {**scalars, **lists, **maps}
    return CompressionSummary(**fields)


def serialize_summary(summary: CompressionSummary) -> str:
    """Canonical JSON form: sorted keys, two-space indent."""
    return json.dumps(summary.model_dump(mode="json"), indent=2, sort_keys=True, ensure_ascii=False)


def deserialize_summary(text: str) -> CompressionSummary:
    try:
        return CompressionSummary.model_validate_json(text)
    except ValidationError as exc:
        raise PayloadInvalidError(f"not a context summary: {exc.errors()[0]['msg']}") from exc


def _bullets(title: str, items: Sequence[str]) -> list[str]:
    if not items:
        return []
    return [f"### {title}", *(f"- {item}" for item in items), ""]


def _pairs(title: str, mapping: dict[str, str]) -> list[str]:
    if not mapping:
        return []
    return [f"### {title}", *(f"- {k}: {v}" for k, v in sorted(mapping.items())), ""]


def render_markdown(summary: CompressionSummary) -> str:
    """Markdown document for re-injection at the start of a later session."""
    lines = ["## Critical Context", ""]
    lines.append(f"**Project**: {summary.project_label or 'unknown'}")
    if summary.working_directory:
        lines.append(f"**Working Directory**: {summary.working_directory}")
    if summary.current_objective:
        lines.append(f"**Current Objective**: {summary.current_objective}")
    if summary.current_phase:
        lines.append(f"**Phase**: {summary.current_phase}")
    lines.append("")

    if summary.technical_stack:
        lines.append(f"**Technical Stack**: {', '.join(summary.technical_stack)}")
        lines.append("")

    lines += _pairs("Technical Decisions", summary.key_decisions)
    lines += _bullets("Constraints", summary.constraints)
    lines += _pairs("User Preferences", summary.user_preferences)

    style = [
        f"Workflow: {summary.workflow_style}" if summary.workflow_style else "",
        f"Communication: {summary.communication_style}" if summary.communication_style else "",
        f"Trust: {summary.trust_level}" if summary.trust_level else "",
    ]
    lines += _bullets("Working Style", [s for s in style if s])

    lines += _bullets("Recently Completed", summary.completed_tasks)
    lines += _bullets("Pending Tasks", summary.pending_tasks)
    lines += _bullets("Active Problems", summary.active_problems)
    lines += _bullets("Known Issues to Avoid", summary.errors_to_avoid)
    lines += _pairs("Solutions That Worked", summary.successful_solutions)
    lines += _bullets("Approval Patterns", summary.approval_patterns)
    lines += _bullets("Topics to Avoid", summary.avoid_topics)

    return "\n".join(lines).rstrip() + "\n"

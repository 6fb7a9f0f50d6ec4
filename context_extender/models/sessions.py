from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class SessionStatus(StrEnum):
    """Lifecycle status of a captured session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class Session(BaseModel):
    """One interactive conversation with the host tool."""

    id: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    ended_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Session":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")
        return self


class SessionFilter(BaseModel):
    """Criteria for listing sessions."""

    status: SessionStatus | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    order_by: Literal["created_at", "updated_at"] = "created_at"
    descending: bool = True
    limit: int | None = Field(default=None, gt=0)
    offset: int = Field(default=0, ge=0)

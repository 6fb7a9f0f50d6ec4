from pydantic import BaseModel, ConfigDict, Field, field_validator


class CompressionSummary(BaseModel):
    """Critical context distilled from a session for re-injection later."""

    model_config = ConfigDict(extra="forbid")

    # Core project context
    project_label: str = ""
    current_objective: str = ""
    current_phase: str = ""
    working_directory: str = ""

    # Technical decisions
    technical_stack: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    key_decisions: dict[str, str] = Field(default_factory=dict)

    # User preferences
    user_preferences: dict[str, str] = Field(default_factory=dict)
    workflow_style: str = ""
    communication_style: str = ""

    # Current state
    completed_tasks: list[str] = Field(default_factory=list)
    pending_tasks: list[str] = Field(default_factory=list)
    active_problems: list[str] = Field(default_factory=list)

    # Implementation details
    errors_to_avoid: list[str] = Field(default_factory=list)
    successful_solutions: dict[str, str] = Field(default_factory=dict)

    # Relationship context
    trust_level: str = ""
    approval_patterns: list[str] = Field(default_factory=list)
    avoid_topics: list[str] = Field(default_factory=list)

    @field_validator("key_decisions", "user_preferences", "successful_solutions")
    @classmethod
    def _sort_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return dict(sorted(value.items()))

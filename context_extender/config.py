from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_HOME_DIR = Path.home() / ".context-extender"
_DEFAULT_DB_PATH = _HOME_DIR / "conversations.db"


class Settings(BaseSettings):
    PROJECT_NAME: str = "context-extender"
    VERSION: str = "0.3.0"

    DATABASE_PATH: Path = _DEFAULT_DB_PATH
    BUSY_TIMEOUT_SECONDS: float = Field(default=30.0, ge=30.0)

    SESSION_ENV_VAR: str = "CLAUDE_SESSION_ID"
    SESSION_TIMEOUT_MINUTES: int = Field(default=30, gt=0)
    REAP_ON_SESSION_START: bool = True

    CONTEXT_RECENT_MESSAGES: int = Field(default=50, gt=0)
    MARKERS_FILE: Path | None = None

    # Comma-separated prefixes stripped from project names derived from transcript paths
    STRIP_PREFIXES: str = ""

    LOG_LEVEL: str = "WARNING"
    DEBUG: bool = False
    DEBUG_LOG_PATH: Path = _HOME_DIR / "hooks.log"

    model_config = SettingsConfigDict(env_prefix="CONTEXT_EXTENDER_", env_file=".env", extra="ignore")

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.SESSION_TIMEOUT_MINUTES)

    @property
    def strip_prefixes(self) -> list[str]:
        """Prefixes to strip from project names, longest first."""
        prefixes = [p.strip() for p in self.STRIP_PREFIXES.split(",") if p.strip()]
        return sorted(prefixes, key=len, reverse=True)

    def resolve_database_path(self, override: str | Path | None = None) -> Path | str:
        """Pick the database location for this invocation.

        Args:
            override: Explicit path from the command line, if any.

        Returns:
            The expanded path, or ``":memory:"`` unchanged.
        """
        target = override if override is not None else self.DATABASE_PATH
        if str(target) == ":memory:":
            return ":memory:"
        return Path(target).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()

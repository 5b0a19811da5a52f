"""
Autopilot - Configuration
=========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Autopilot"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./autopilot.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Epic Discovery
    # ==========================================================================
    EPICS_DIR: str = "docs/bmad/epics"
    EPIC_FILE_PATTERN: str = "epic-*.md"

    # ==========================================================================
    # Code Host (GitHub)
    # ==========================================================================
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_REPOSITORY: Optional[str] = None  # owner/name

    # ==========================================================================
    # Session Defaults
    # ==========================================================================
    DEFAULT_MAX_AGENTS: int = 1
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_AUTO_MERGE: bool = True

    # ==========================================================================
    # Agent Runtime
    # ==========================================================================
    AGENT_MAX_TURNS: int = 100
    AGENT_CONTEXT_WINDOW: int = 200_000
    AGENT_MESSAGE_TIMEOUT_SECONDS: float = 1800.0
    AGENT_SPAWN_RETRIES: int = 3
    AGENT_RETRY_INITIAL_DELAY: float = 1.0
    AGENT_RETRY_MAX_DELAY: float = 30.0

    # ==========================================================================
    # Model Tiers
    # ==========================================================================
    MODEL_FAST: str = "haiku"
    MODEL_STANDARD: str = "sonnet"
    MODEL_PREMIUM: str = "opus"

    # Complexity scoring (weighted sum, then thresholds)
    COMPLEXITY_CRITERIA_WEIGHT: float = 1.0
    COMPLEXITY_FILES_WEIGHT: float = 0.5
    COMPLEXITY_DEPTH_WEIGHT: float = 1.5
    COMPLEXITY_MEDIUM_THRESHOLD: float = 4.0
    COMPLEXITY_COMPLEX_THRESHOLD: float = 8.0
    ESCALATE_AFTER_RETRIES: int = 2

    # ==========================================================================
    # Decision Engine
    # ==========================================================================
    MAX_REVIEW_ITERATIONS: int = 3
    MAX_FIX_ITERATIONS: int = 3
    MAX_CRITERIA_ITERATIONS: int = 3
    WAIT_BASE_SECONDS: float = 30.0
    WAIT_MAX_SECONDS: float = 600.0
    WAIT_MAX_ATTEMPTS: int = 6

    # ==========================================================================
    # Stuck Detection
    # ==========================================================================
    STUCK_TURN_WARNING_RATIO: float = 0.8
    STUCK_CONTEXT_WARNING_RATIO: float = 0.9
    STUCK_NO_PROGRESS_TURNS: int = 5
    STUCK_NO_OUTPUT_MINUTES: int = 10
    STUCK_CI_TIMEOUT_MINUTES: int = 30
    STUCK_REVIEW_DELAY_MINUTES: int = 60
    STUCK_POLL_INTERVAL_SECONDS: float = 10.0

    # ==========================================================================
    # Recovery
    # ==========================================================================
    RECOVERY_MAX_ATTEMPTS: int = 3
    RECOVERY_CI_TIMEOUT_MAX_ATTEMPTS: int = 2
    RECOVERY_MERGE_CONFLICT_MAX_ATTEMPTS: int = 2
    RECOVERY_RATE_LIMITED_MAX_ATTEMPTS: int = 1
    RECOVERY_OBSERVE_SECONDS: float = 120.0  # Minimum time an attempt runs before the next rung
    RATE_LIMIT_BASE_SECONDS: float = 5.0
    RATE_LIMIT_MAX_SECONDS: float = 300.0
    RATE_LIMIT_MAX_RETRIES: int = 5

    # ==========================================================================
    # Work Evaluation
    # ==========================================================================
    REQUIRED_CI_CHECKS: list[str] = []

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()


# ==========================================================================
# Per-Session Configuration
# ==========================================================================

class SessionConfig(BaseModel):
    """
    Explicit configuration for one autonomous session.

    Stored as JSON on the session record; unknown keys are rejected so that
    a typo never silently falls back to a default.
    """

    model_config = ConfigDict(extra="forbid")

    max_agents: int = Field(default_factory=lambda: settings.DEFAULT_MAX_AGENTS, ge=1)
    max_retries: int = Field(default_factory=lambda: settings.DEFAULT_MAX_RETRIES, ge=0)
    dry_run: bool = False
    auto_merge: bool = Field(default_factory=lambda: settings.DEFAULT_AUTO_MERGE)
    model: Optional[str] = None
    epic_pattern: str = "*"
    max_turns: int = Field(default_factory=lambda: settings.AGENT_MAX_TURNS, ge=1)
    required_checks: list[str] = Field(default_factory=lambda: list(settings.REQUIRED_CI_CHECKS))

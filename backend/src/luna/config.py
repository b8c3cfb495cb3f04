"""Centralized configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Assistant settings from environment variables (prefix ``LUNA_``).

    All fields are optional with sensible defaults.
    Validation occurs on first get_settings() call.
    """

    model_config = SettingsConfigDict(
        env_prefix="LUNA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    cancel_keywords: list[str] = Field(
        default_factory=lambda: ["cancel", "stop", "never mind", "nevermind", "forget it", "nvm"]
    )
    abort_keywords: list[str] = Field(
        default_factory=lambda: ["abort", "quit", "exit", "stop playbook"]
    )
    skip_keywords: list[str] = Field(
        default_factory=lambda: ["skip", "skip step", "skip this", "pass"]
    )
    next_keywords: list[str] = Field(
        default_factory=lambda: [
            "next", "continue", "ok", "okay", "yes", "go", "go ahead", "proceed",
            "sure", "yep", "yeah", "y", "confirm", "confirmed",
        ]
    )

    max_message_length: int = 500
    max_history_entries: int = 8

    # Session store limits
    max_sessions: int = 100
    max_messages_per_session: int = 200

    telemetry_max_events: int = 1000
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {', '.join(sorted(valid_levels))}")
        return upper

    @field_validator("cancel_keywords", "abort_keywords", "skip_keywords", "next_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        normalized = [" ".join(k.lower().split()) for k in v if k.strip()]
        if not normalized:
            raise ValueError("keyword list must not be empty")
        return normalized

    @field_validator(
        "max_message_length",
        "max_history_entries",
        "max_sessions",
        "max_messages_per_session",
        "telemetry_max_events",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary."""
        return {
            "cancel_keywords": list(self.cancel_keywords),
            "abort_keywords": list(self.abort_keywords),
            "skip_keywords": list(self.skip_keywords),
            "next_keywords": list(self.next_keywords),
            "max_message_length": self.max_message_length,
            "max_history_entries": self.max_history_entries,
            "max_sessions": self.max_sessions,
            "max_messages_per_session": self.max_messages_per_session,
            "telemetry_max_events": self.telemetry_max_events,
            "log_level": self.log_level,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached Settings singleton.

    For testing: override with get_settings.cache_clear() then set env vars.
    """
    return Settings()

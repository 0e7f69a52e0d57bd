"""
Configuration settings for mastery-path.

Uses Pydantic Settings for environment variable management with .env file support.
The core modules never read the environment; the CLI turns these settings into
SchedulingOptions and PenaltyPolicy and passes them in.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.core.mastery import PenaltyPolicy
from src.study.retention_engine import LearningContext, SchedulingOptions


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MASTERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Minimum loguru level written to stderr",
    )

    # ========================================
    # Retention scheduling
    # ========================================
    learning_context: LearningContext | None = Field(
        default=None,
        description="Preset (beginner/intermediate/advanced) applied over the values below",
    )
    min_interval_days: float = Field(default=1, gt=0, description="Shortest review interval")
    max_interval_days: float = Field(default=365, gt=0, description="Longest review interval")
    initial_interval_days: float = Field(default=1, gt=0, description="First review interval")
    initial_ease_factor: float = Field(
        default=2.5,
        ge=1.3,
        le=2.5,
        description="Ease factor for new cards",
    )
    interval_modifier: float = Field(
        default=1.0,
        gt=0,
        description="Multiplier applied to every computed interval",
    )
    performance_threshold: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="Score counted as a successful review",
    )
    urgency_boost: float = Field(default=1.5, gt=0)

    # ========================================
    # Scoring penalties (percentage points)
    # ========================================
    hint_penalty: float = Field(default=5.0, ge=0, description="Deducted per hint used")
    time_penalty_rate: float = Field(
        default=10.0,
        ge=0,
        description="Penalty per 100% time overrun",
    )
    max_time_penalty: float = Field(default=20.0, ge=0, description="Cap on the time penalty")

    # ========================================
    # Retention optimizer
    # ========================================
    optimizer_max_workers: int | None = Field(
        default=None,
        ge=1,
        description="Thread pool size for batch optimization (None = CPU count)",
    )
    optimizer_user_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-user timeout in batch optimization",
    )

    # ========================================
    # CLI storage
    # ========================================
    cards_file: str = Field(
        default="mastery_cards.json",
        description="JSON file the CLI keeps review cards in",
    )

    def get_scheduling_options(self) -> SchedulingOptions:
        """Scheduling options, with the learning-context preset applied when set."""
        options = SchedulingOptions(
            min_interval=self.min_interval_days,
            max_interval=self.max_interval_days,
            initial_interval=self.initial_interval_days,
            ease_factor=self.initial_ease_factor,
            interval_modifier=self.interval_modifier,
            performance_threshold=self.performance_threshold,
            urgency_boost=self.urgency_boost,
        )
        if self.learning_context is not None:
            options = SchedulingOptions.for_context(self.learning_context, options)
        return options

    def get_penalty_policy(self) -> PenaltyPolicy:
        return PenaltyPolicy(
            hint_penalty=self.hint_penalty,
            time_penalty_rate=self.time_penalty_rate,
            max_time_penalty=self.max_time_penalty,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

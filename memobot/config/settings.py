"""Application settings loaded from the environment and `.env`."""

from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Every memory/loop tuning knob has the production default, so an empty
    environment yields a working (if key-less) configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Telegram ---
    telegram_bot_token: Optional[SecretStr] = None
    allowed_chat_id: Optional[int] = None

    # --- Storage ---
    database_url: str = "sqlite:///data/memobot.db"

    # --- Reasoning engines ---
    llm_provider: Literal["anthropic", "openai"] = "anthropic"
    anthropic_api_key: Optional[SecretStr] = None
    anthropic_model: str = "claude-sonnet-4-6"
    openai_api_key: Optional[SecretStr] = None
    openai_chat_model: str = "gpt-4.1"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    timezone: str = "Europe/Madrid"
    debug: bool = False

    # --- Retrieval ---
    retrieval_min_similarity: float = Field(0.40, ge=0.0, le=1.0)
    retrieval_short_min_similarity: float = Field(0.52, ge=0.0, le=1.0)
    retrieval_min_score: float = Field(0.35, ge=0.0, le=1.0)
    retrieval_short_min_score: float = Field(0.50, ge=0.0, le=1.0)
    pattern_token_budget: int = Field(2000, gt=0)

    # --- Compaction ---
    compaction_token_budget: int = Field(12_000, gt=0)
    compaction_interval_hours: float = Field(12.0, gt=0)
    min_turns_for_time_compaction: int = Field(10, ge=1)
    min_turns_for_force_compaction: int = Field(4, ge=1)
    max_new_patterns_per_compaction: int = Field(7, ge=1)
    numeric_fact_epsilon_kg: float = Field(0.5, ge=0.0)
    implicit_signal_weight: float = Field(0.5, ge=0.0, le=1.0)

    # --- Tool loop ---
    max_tool_calls: int = Field(15, ge=1)
    tool_loop_timeout_seconds: float = Field(120.0, gt=0)

    @field_validator("llm_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _check_short_query_floors(self) -> "Settings":
        # Short queries over-match more easily, so their floors can't be looser.
        if self.retrieval_short_min_similarity < self.retrieval_min_similarity:
            raise ValueError(
                "retrieval_short_min_similarity must be >= retrieval_min_similarity"
            )
        if self.retrieval_short_min_score < self.retrieval_min_score:
            raise ValueError(
                "retrieval_short_min_score must be >= retrieval_min_score"
            )
        return self

    @property
    def telegram_bot_token_str(self) -> Optional[str]:
        return (
            self.telegram_bot_token.get_secret_value()
            if self.telegram_bot_token
            else None
        )

    @property
    def anthropic_api_key_str(self) -> Optional[str]:
        return (
            self.anthropic_api_key.get_secret_value()
            if self.anthropic_api_key
            else None
        )

    @property
    def openai_api_key_str(self) -> Optional[str]:
        return self.openai_api_key.get_secret_value() if self.openai_api_key else None

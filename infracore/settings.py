"""
Engine Settings.

Centralized configuration using Pydantic Settings with environment variable
loading (prefix ``INFRACORE_``). Values can also come from a ``.env`` file.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INFRACORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------
    backend: Literal["local", "memory"] = Field(
        default="local",
        description="State backend type",
    )
    state_path: str = Field(
        default="./.infracore",
        description="Directory holding workspace state for the local backend",
    )
    workspace: str = Field(
        default="default",
        description="Workspace used when none has been selected",
    )

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------
    lock_timeout: float = Field(
        default=10.0,
        ge=0,
        description="Seconds to wait for the state lock before failing",
    )
    lock_poll_interval: float = Field(
        default=0.1,
        gt=0,
        description="Seconds between lock acquisition attempts",
    )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    parallelism: int = Field(
        default=10,
        ge=1,
        description="Maximum number of concurrent provider operations",
    )
    refresh_before_plan: bool = Field(
        default=True,
        description="Read back recorded resources and fail on drift before planning",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()

"""
Centralized settings management using pydantic-settings.

All environment variables and configuration values are defined here.
Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.constants import (
    AggregatorConfig,
    BlocklistConfig,
    DiversifierConfig,
    SessionConfig,
    StoreConfig,
)


class Settings(BaseSettings):
    """
    Personalization settings loaded from environment variables.

    No variable is required; every knob has a default.

    Common environment variables:
        - ENVIRONMENT: Environment name (development, staging, production)
        - STORE_BACKEND: memory, redis or auto (default: memory)
        - REDIS_URL: Redis connection URL
        - LOG_JSON / LOG_LEVEL: logging output
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")
    log_json: bool = Field(default=False, description="Render logs as JSON")
    log_level: str = Field(default="INFO", description="Minimum log level")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    # ==========================================================================
    # Document Store
    # ==========================================================================
    store_backend: str = Field(
        default="memory",
        description="Document store backend: memory, redis or auto"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    redis_key_prefix: str = Field(default="pers", description="Prefix for Redis keys")
    store_timeout_seconds: float = Field(
        default=2.0,
        description="Upper bound for any single store call"
    )
    store_max_attempts: int = Field(
        default=3,
        description="Attempts for optimistic read-modify-write before giving up"
    )
    store_backoff_base_seconds: float = Field(
        default=0.1,
        description="Backoff base; attempt n sleeps base * 2^n"
    )

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("memory", "redis", "auto"):
            raise ValueError(f"store_backend must be memory, redis or auto, got {v!r}")
        return v

    # ==========================================================================
    # Profile Cache
    # ==========================================================================
    profile_cache_ttl_seconds: float = Field(
        default=300.0,
        description="Profile cache TTL (5 minutes)"
    )
    profile_cache_max_size: int = Field(
        default=1024,
        description="Maximum cached profiles before LRU eviction"
    )

    # ==========================================================================
    # Aggregation
    # ==========================================================================
    recency_tiers_days: List[int] = Field(
        default=[30, 90, 180],
        description="Day boundaries for the recency multiplier tiers"
    )
    recency_multipliers: List[float] = Field(
        default=[1.0, 0.75, 0.5],
        description="Multiplier for each recency tier"
    )
    recency_floor: float = Field(
        default=0.25,
        description="Multiplier beyond the last tier, up to the decay horizon"
    )
    max_decay_horizon_days: int = Field(
        default=365,
        description="Events older than this carry no weight"
    )

    @field_validator("recency_tiers_days", "recency_multipliers", mode="before")
    @classmethod
    def parse_number_list(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    # ==========================================================================
    # Blocklists
    # ==========================================================================
    soft_penalty: float = Field(default=0.5, description="Score multiplier for soft matches")
    soft_promotion_threshold: int = Field(
        default=10,
        description="Ignore count at which a soft entry is promoted to hard"
    )
    temporary_ttl_days: int = Field(default=30, description="Anti-repetition window")
    temporary_max_entries: int = Field(
        default=200,
        description="Cap on temporary entries per user (oldest evicted)"
    )

    # ==========================================================================
    # Diversifier
    # ==========================================================================
    pattern_lock_window: int = Field(
        default=10,
        description="Accepted recommendations inspected for pattern lock"
    )
    pattern_lock_share: float = Field(
        default=0.8,
        description="Dominant value share that counts as a lock"
    )
    enable_adaptive_exploration: bool = Field(
        default=True,
        description="Adapt the exploring ratio from exploration success"
    )

    # ==========================================================================
    # Sessions
    # ==========================================================================
    session_timeout_seconds: float = Field(
        default=300.0,
        description="Inactivity timeout before a session closes as ignored"
    )

    # ==========================================================================
    # Derived algorithm configs
    # ==========================================================================

    def to_aggregator_config(self) -> AggregatorConfig:
        tiers = tuple(zip(
            (int(d) for d in self.recency_tiers_days),
            (float(m) for m in self.recency_multipliers),
        ))
        return AggregatorConfig(
            RECENCY_TIERS=tiers,
            RECENCY_FLOOR=self.recency_floor,
            MAX_DECAY_HORIZON_DAYS=self.max_decay_horizon_days,
        )

    def to_blocklist_config(self) -> BlocklistConfig:
        return BlocklistConfig(
            SOFT_PENALTY=self.soft_penalty,
            PROMOTION_THRESHOLD=self.soft_promotion_threshold,
            TEMPORARY_TTL_DAYS=self.temporary_ttl_days,
            TEMPORARY_MAX_ENTRIES=self.temporary_max_entries,
        )

    def to_diversifier_config(self) -> DiversifierConfig:
        if self.enable_adaptive_exploration:
            return DiversifierConfig(
                PATTERN_LOCK_WINDOW=self.pattern_lock_window,
                PATTERN_LOCK_SHARE=self.pattern_lock_share,
            )
        return DiversifierConfig(
            PATTERN_LOCK_WINDOW=self.pattern_lock_window,
            PATTERN_LOCK_SHARE=self.pattern_lock_share,
            ADAPTIVE_TIERS=frozenset(),
        )

    def to_session_config(self) -> SessionConfig:
        return SessionConfig(INACTIVITY_TIMEOUT_SECONDS=self.session_timeout_seconds)

    def to_store_config(self) -> StoreConfig:
        return StoreConfig(
            MAX_ATTEMPTS=self.store_max_attempts,
            BACKOFF_BASE_SECONDS=self.store_backoff_base_seconds,
            TIMEOUT_SECONDS=self.store_timeout_seconds,
            PROFILE_CACHE_TTL_SECONDS=self.profile_cache_ttl_seconds,
            PROFILE_CACHE_MAX_SIZE=self.profile_cache_max_size,
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure only one instance is created.
    Settings are loaded from environment variables and .env file.

    Returns:
        Settings: The application settings instance
    """
    # Try to find .env file in project root
    env_file = Path(__file__).parent.parent.parent / ".env"
    if env_file.exists():
        os.environ.setdefault("ENV_FILE", str(env_file))

    return Settings(_env_file=env_file if env_file.exists() else None)


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a settings instance for testing with optional overrides.

    This bypasses the cache to allow different settings in tests.

    Args:
        **overrides: Setting values to override

    Returns:
        Settings: A new settings instance with overrides applied
    """
    test_defaults = {
        "environment": "testing",
        "debug": True,
        "store_backend": "memory",
        "store_backoff_base_seconds": 0.0,
    }
    test_defaults.update(overrides)

    return Settings(_env_file=None, **test_defaults)

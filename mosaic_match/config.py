"""
MosaicMatch — Client Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the MosaicMatch client core."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Matching backend (RPC)
    # ------------------------------------------------------------------ #
    MOCK_MODE_ENABLED: bool = False
    BACKEND_BASE_URL: str = ""
    BACKEND_SERVER_KEY: str = "defaultkey"
    EMBEDDING_API_BASE_URL: str = ""
    RPC_TIMEOUT_MS: int = 5000

    # ------------------------------------------------------------------ #
    # Status polling
    # ------------------------------------------------------------------ #
    REFRESH_INTERVAL_WAITING_MS: int = 30_000
    REFRESH_INTERVAL_DEFAULT_MS: int = 120_000
    POLL_TICK_MS: int = 10_000
    PROCESSING_WINDOW_SECONDS: int = 60

    # ------------------------------------------------------------------ #
    # Per-user session contexts
    # ------------------------------------------------------------------ #
    SESSION_IDLE_TTL_S: int = 900
    SESSION_MAX_CONTEXTS: int = 1000

    # ------------------------------------------------------------------ #
    # Trait aggregation
    # ------------------------------------------------------------------ #
    AGGREGATION_BATCH_SIZE: int = 5
    AGGREGATION_MAX_ATTEMPTS: int = 3
    AGGREGATION_BASE_DELAY_MS: int = 1000

    # ------------------------------------------------------------------ #
    # Conversation record store (HTTP or Google Cloud Storage)
    # ------------------------------------------------------------------ #
    RECORD_BASE_URL: str = ""
    GCP_PROJECT_ID: str = ""
    GCS_BUCKET_NAME: str = ""

    # ------------------------------------------------------------------ #
    # Journey simulator
    # ------------------------------------------------------------------ #
    SIMULATOR_SIMULATE_NETWORK_DELAY: bool = True
    SIMULATOR_MIN_DELAY_MS: int = 200
    SIMULATOR_MAX_DELAY_MS: int = 800
    SIMULATOR_INJECT_RANDOM_ERRORS: bool = False
    SIMULATOR_ERROR_PROBABILITY: float = 0.1
    SIMULATOR_NETWORK_ERRORS: bool = True
    SIMULATOR_CLIENT_ERRORS: bool = True
    SIMULATOR_SERVER_ERRORS: bool = True
    SIMULATOR_SIMULATE_USER_JOURNEY: bool = False
    SIMULATOR_PROCESSING_DURATION_S: int = 10
    SIMULATOR_WAITING_DURATION_S: int = 30

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def use_simulator(self) -> bool:
        """Simulator is used when forced, or outside production when no
        backend URL has been configured."""
        if self.MOCK_MODE_ENABLED:
            return True
        return not self.is_production and not self.BACKEND_BASE_URL

    @property
    def is_configured(self) -> bool:
        """Outside production the core always counts as configured (it falls
        back to the simulator); in production a backend URL is required."""
        if not self.is_production:
            return True
        return bool(self.BACKEND_BASE_URL)

    @property
    def embedding_api_url(self) -> str:
        return self.EMBEDDING_API_BASE_URL or self.BACKEND_BASE_URL

    @property
    def rpc_timeout_seconds(self) -> float:
        return self.RPC_TIMEOUT_MS / 1000.0

    @field_validator(
        "RPC_TIMEOUT_MS",
        "REFRESH_INTERVAL_WAITING_MS",
        "REFRESH_INTERVAL_DEFAULT_MS",
        "POLL_TICK_MS",
        "AGGREGATION_BATCH_SIZE",
        "AGGREGATION_MAX_ATTEMPTS",
        "SESSION_IDLE_TTL_S",
        "SESSION_MAX_CONTEXTS",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator("SIMULATOR_ERROR_PROBABILITY")
    @classmethod
    def _probability_must_be_between_0_and_1(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Probability must be between 0 and 1, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime::

        from mosaic_match.config import get_settings
        settings = get_settings()
    """
    return Settings()

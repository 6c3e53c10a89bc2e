"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SIGRISK happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to reject an inconsistent risk
      policy (thresholds out of order, a zero normalization anchor) at startup
      rather than on the first calculation.

The risk policy fields are tunable policy, not physics. core/calculator.py
reads them only through RiskPolicy.from_settings(); the calculator itself
never touches the environment.

Layer rule: core/ is the kernel. This module may not import from api/,
registry/, or cache/.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sigrisk.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///sigrisk.db"
    cache_path: str = "sigrisk_cache.db"
    cache_enabled: bool = True

    # ------------------------------------------------------------------
    # NVD feed
    # ------------------------------------------------------------------

    # Optional. With a key NVD allows 50 req/30s instead of 5 req/30s.
    nvd_api_key: str = ""
    nvd_timeout: int = 30

    # ------------------------------------------------------------------
    # Risk policy
    # ------------------------------------------------------------------

    # Economic value that maps to an impact multiplier of 1.0.
    economic_reference_value: float = 100_000.0
    # Exploit factor used when a risk has no linked vulnerability.
    default_exploit_factor: float = 0.5
    # Lower bounds (inclusive) of each level on the exposure scale.
    level_critical: float = 80.0
    level_high: float = 60.0
    level_medium: float = 40.0
    level_low: float = 20.0

    top_risks_default: int = 10

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_risk_policy(self) -> "Settings":
        """Refuse to start with a risk policy the calculator cannot honour."""
        if self.economic_reference_value <= 0:
            raise ValueError("ECONOMIC_REFERENCE_VALUE must be greater than zero.")
        if not 0.0 <= self.default_exploit_factor <= 1.0:
            raise ValueError("DEFAULT_EXPLOIT_FACTOR must be between 0 and 1.")
        thresholds = [self.level_critical, self.level_high, self.level_medium, self.level_low]
        if any(t <= 0 for t in thresholds) or thresholds != sorted(set(thresholds), reverse=True):
            raise ValueError(
                "Risk level thresholds must be positive and strictly descending: "
                "LEVEL_CRITICAL > LEVEL_HIGH > LEVEL_MEDIUM > LEVEL_LOW."
            )
        if self.top_risks_default < 1:
            raise ValueError("TOP_RISKS_DEFAULT must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string into an aware datetime.

    Naive values are treated as UTC. Returns None for empty input and raises
    ValueError for malformed strings.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

"""
Configuration module for PixelMint.

This module handles generation-core configuration, settings loading,
data directory management and secure API key storage.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional

import keyring
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KEYRING_SERVICE = "pixelmint"


class BudgetLimitConfig(BaseModel):
    """Daily and monthly spend ceilings for one provider (USD)."""

    daily: float = Field(default=5.0, ge=0)
    monthly: float = Field(default=50.0, ge=0)

    model_config = ConfigDict(extra="ignore")


class RateLimitConfig(BaseModel):
    """Token bucket parameters for one provider."""

    capacity: int = Field(default=60, ge=1)
    refill_rate: int = Field(default=1, ge=1)
    interval: float = Field(default=1.0, gt=0, description="Refill interval in seconds")

    model_config = ConfigDict(extra="ignore")


def _default_provider_budgets() -> Dict[str, BudgetLimitConfig]:
    return {
        "gemini": BudgetLimitConfig(daily=5.0, monthly=50.0),
        "openai": BudgetLimitConfig(daily=10.0, monthly=100.0),
        "stable_diffusion": BudgetLimitConfig(daily=7.5, monthly=75.0),
        "local": BudgetLimitConfig(daily=0.0, monthly=0.0),
    }


def _default_rate_limits() -> Dict[str, RateLimitConfig]:
    return {
        "gemini": RateLimitConfig(capacity=60, refill_rate=1, interval=1.0),  # 60 RPM
        "openai": RateLimitConfig(capacity=15, refill_rate=1, interval=4.0),  # 15 RPM
        "stable_diffusion": RateLimitConfig(capacity=30, refill_rate=1, interval=2.0),  # 30 RPM
    }


class Settings(BaseSettings):
    """Generation core settings with validation."""

    # Storage
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".pixelmint",
        description="Root directory for the spend ledger, result cache and logs",
    )

    # Budget Settings
    provider_budgets: Dict[str, BudgetLimitConfig] = Field(
        default_factory=_default_provider_budgets, description="Per-provider daily/monthly ceilings"
    )
    default_provider_budget: BudgetLimitConfig = Field(
        default_factory=BudgetLimitConfig, description="Ceilings applied to providers without an explicit budget"
    )
    global_monthly_budget: float = Field(default=200.0, ge=0, description="Ceiling across all providers")
    budget_warning_threshold: float = Field(default=75.0, description="Budget warning threshold in percent")

    # Rate limiting & quota
    rate_limits: Dict[str, RateLimitConfig] = Field(
        default_factory=_default_rate_limits, description="Per-provider token bucket overrides"
    )
    queue_max_size: int = Field(default=50, ge=0, description="Maximum rate limiter wait queue length")
    queue_timeout: float = Field(default=300.0, gt=0, description="Seconds a queued acquire may wait")
    quota_update_interval: float = Field(default=300.0, ge=0, description="Seconds between quota refreshes")
    quota_warning_threshold: float = Field(default=0.8, description="Quota usage ratio that raises a warning")
    quota_blocking_threshold: float = Field(default=0.95, description="Quota usage ratio that blocks requests")

    # Failover
    failover_order: List[str] = Field(
        default=["gemini", "stable_diffusion", "openai"], description="Preferred provider order"
    )
    cooldown_period: float = Field(default=300.0, ge=0, description="Seconds an unhealthy provider is skipped")
    max_failover_attempts: Optional[int] = Field(
        default=None, ge=1, description="Remote providers dispatched per generate call; None tries every eligible one"
    )
    provider_retry_attempts: int = Field(default=1, ge=1, description="Attempts on the same provider")
    max_retry_delay: float = Field(default=5.0, ge=0, description="Cap on waits between attempts")
    health_check_interval: float = Field(default=300.0, gt=0, description="Seconds between health checks")
    api_timeout: int = Field(default=60, description="Provider HTTP timeout in seconds")

    # Cache
    cache_enabled: bool = Field(default=True, description="Enable the result cache")
    cache_max_size: int = Field(default=500 * 1024 * 1024, gt=0, description="Cache ceiling in bytes")
    cache_max_age: float = Field(default=30 * 24 * 3600, gt=0, description="Cache entry lifetime in seconds")
    cache_fallback_max_entries: int = Field(default=500, gt=0, description="In-memory fallback capacity")

    # Batch
    batch_max_concurrency: int = Field(default=5, ge=1, le=20, description="Concurrent unique batch requests")
    batch_request_timeout: float = Field(default=120.0, gt=0, description="Seconds before a pending entry expires")

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Log to file")
    max_log_size: int = Field(default=10, description="Max log file size in MB")

    model_config = SettingsConfigDict(
        env_prefix="PIXELMINT_",
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    @field_validator("budget_warning_threshold")
    @classmethod
    def validate_warning_threshold(cls, v: float) -> float:
        """Validate budget warning threshold (percent)."""
        if v <= 0 or v > 100:
            raise ValueError("budget_warning_threshold must be in (0, 100]")
        return v

    @field_validator("quota_warning_threshold", "quota_blocking_threshold")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Validate quota usage ratios."""
        if v <= 0 or v > 1:
            raise ValueError("Quota thresholds are ratios in (0, 1]")
        return v

    @field_validator("failover_order")
    @classmethod
    def validate_failover_order(cls, v: List[str]) -> List[str]:
        """Normalize provider names."""
        return [name.strip().lower() for name in v if name and name.strip()]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    def budget_for(self, provider: str) -> BudgetLimitConfig:
        """Return the configured budget for a provider, falling back to the default."""
        return self.provider_budgets.get(provider, self.default_provider_budget)


def ensure_data_dir(settings: Settings) -> Path:
    """Ensure the data directory exists."""
    path = Path(settings.data_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_api_key(provider: str) -> Optional[str]:
    """Load API key for the given provider from keyring."""
    try:
        return keyring.get_password(KEYRING_SERVICE, f"{provider.lower()}_api_key")
    except Exception as e:
        logger.warning(f"Failed to load {provider} API key from keyring: {e}")
        return None


def save_api_key(api_key: str, provider: str) -> bool:
    """Save API key for the given provider to keyring."""
    try:
        keyring.set_password(KEYRING_SERVICE, f"{provider.lower()}_api_key", api_key)
        logger.info(f"{provider.capitalize()} API key saved to keyring")
        return True
    except Exception as e:
        logger.error(f"Failed to save {provider} API key to keyring: {e}")
        return False


def delete_api_key(provider: str) -> bool:
    """Delete API key for the given provider from keyring."""
    try:
        keyring.delete_password(KEYRING_SERVICE, f"{provider.lower()}_api_key")
        logger.info(f"{provider.capitalize()} API key deleted from keyring")
        return True
    except Exception as e:
        logger.error(f"Failed to delete {provider} API key from keyring: {e}")
        return False


def validate_api_key_format(api_key: str, provider: Optional[str] = "openai") -> bool:
    """Validate API key format for supported providers.

    Supported providers:
      - openai: keys start with 'sk-' and contain 20+ characters (letters, digits, '-', or '_') after the prefix
      - gemini: keys start with 'AIza' followed by 35+ URL-safe characters
      - stable_diffusion: keys start with 'sk-' like OpenAI keys
    """
    if not api_key or not isinstance(api_key, str):
        return False

    prov = (provider or "openai").lower()

    if prov in ("openai", "stable_diffusion"):
        return bool(re.match(r"^sk-[A-Za-z0-9_-]{20,}$", api_key))
    if prov == "gemini":
        return bool(re.match(r"^AIza[0-9A-Za-z_-]{35,}$", api_key))
    # Generic fallback for unknown providers
    return len(api_key) >= 16

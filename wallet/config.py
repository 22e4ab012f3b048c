"""
Configuration Management Module

Centralized wallet configuration using pydantic-settings. Every field can be
overridden with a WALLET_-prefixed environment variable or a .env file.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class WalletConfig(BaseSettings):
    """Wallet service configuration"""

    # Storage
    data_file: Optional[str] = "db.json"  # Empty or None keeps the store in memory
    lock_timeout_seconds: float = 2.0

    # Bonuses, in minor currency units
    welcome_bonus: int = 5000
    referral_bonus: int = 1_000_000
    boosted_referral_bonus: int = 10_000_000
    referral_credits_new_account: bool = True

    account_number_attempts: int = 10
    idempotency_cache_size: int = 10_000

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


config = WalletConfig()


def get_config() -> WalletConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletConfig:
    """Reload configuration from environment"""
    global config
    config = WalletConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "lending.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    default_threshold_cycles: int = 3  # consecutive missed cycles before default
    loan_number_format: str = "LN-{YYYY}-{MM}-{####}"

    # Concurrency configuration
    lock_shards: int = 64


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config

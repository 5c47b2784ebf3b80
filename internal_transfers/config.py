"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class TransfersConfig(BaseSettings):
    """Internal transfers service configuration"""

    # Database configuration
    database_url: str = "sqlite:///transfers.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_min: int = 1
    database_pool_max: int = 10

    # Upper bound for a single engine call, in seconds
    request_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Migration configuration
    auto_migrate: bool = True

    model_config = SettingsConfigDict(
        env_prefix="TRANSFERS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )


# Global configuration instance
config = TransfersConfig()


def get_config() -> TransfersConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TransfersConfig:
    """Reload configuration from environment"""
    global config
    config = TransfersConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class BackOfficeConfig(BaseSettings):
    """Back office core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="BACK_OFFICE_",
        env_file=".env",
        case_sensitive=False,
    )

    # Database configuration
    database_url: str = "sqlite:///back_office.db"  # or memory://

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"
    password_min_length: int = 8
    temporary_password_bytes: int = 9

    # Login lockout
    max_failed_logins: int = 5
    lockout_hours: int = 24

    # Account numbering
    account_number_prefix: str = "ACCT-"
    account_number_width: int = 10

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = BackOfficeConfig()


def get_config() -> BackOfficeConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BackOfficeConfig:
    """Reload configuration from environment"""
    global config
    config = BackOfficeConfig()
    return config

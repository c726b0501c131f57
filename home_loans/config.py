"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings


class HomeLoanConfig(BaseSettings):
    """Home loan core configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path.db

    # Business rules configuration
    min_loan_amount: Decimal = Decimal("10000.00")
    min_tenure_months: int = 6
    max_purpose_length: int = 500
    currency_code: str = "INR"  # display only

    # Notification configuration
    notification_channel: str = "log"  # log or webhook
    notification_webhook_url: str = ""
    notification_timeout: float = 5.0
    reminder_days_ahead: int = 5

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "HOMELOAN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = HomeLoanConfig()


def get_config() -> HomeLoanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> HomeLoanConfig:
    """Reload configuration from environment"""
    global config
    config = HomeLoanConfig()
    return config

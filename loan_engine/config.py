"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanEngineConfig(BaseSettings):
    """Loan lifecycle and liquidation engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/file.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money configuration
    currency: str = "NGN"

    # Lifecycle rules
    activation_grace_days: int = 7  # First installment anchor after card authorization
    loan_account_number_attempts: int = 10

    # Calculator limits
    min_installments: int = 2
    max_installments: int = 365
    default_penalty_rate: str = "5"  # Used when a loan carries no penalty rate

    # Liquidation rules
    liquidation_amount_tolerance: str = "1"  # Whole currency units

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config

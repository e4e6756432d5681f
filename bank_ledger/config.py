"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "ledger.db"
    sqlite_timeout_seconds: float = 5.0  # SQLite busy timeout before a write conflict
    
    # Business rules configuration
    currency: str = "USD"  # ISO 4217 code; defines the fractional scale
    account_number_attempts: int = 10
    
    # Concurrency configuration
    lock_timeout_seconds: float = 5.0  # Max wait for account locks before Busy
    
    # Notification configuration
    notification_workers: int = 2
    notification_webhook_url: str = ""  # Empty = webhook channel disabled
    notification_webhook_timeout: float = 5.0
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Built on first use, never at import time
_config: Optional[LedgerConfig] = None


def get_config() -> LedgerConfig:
    """Get the shared configuration, reading the environment on first call"""
    global _config
    if _config is None:
        _config = LedgerConfig()
    return _config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global _config
    _config = LedgerConfig()
    return _config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """ATM ledger configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/file.db
    
    # Concurrency configuration
    lock_timeout_seconds: float = 5.0  # Bounded wait for an account lock or the storage backend
    
    # Query configuration
    default_history_limit: int = 20
    
    # Account numbering
    account_number_length: int = 11
    account_number_max_attempts: int = 100
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "ATM_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config

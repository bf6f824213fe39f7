"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""
    
    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///servicing.db
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Audit configuration
    enable_audit_logging: bool = True
    
    # Notification delivery
    notification_webhook_url: str = ""  # Empty = store notifications locally
    notification_timeout: float = 2.0
    notification_api_key: str = ""
    background_side_effects: bool = False
    
    # Nightly classification batch
    classification_workers: int = 4
    classification_timeout: Optional[float] = 300.0  # Seconds per loan; None = no limit
    
    # Business rules configuration
    overpayment_tolerance: str = "0.01"
    system_actor: str = "System"
    
    class Config:
        env_prefix = "LOANSVC_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .currency import Currency


class ReportingConfig(BaseSettings):
    """Ripoti reporting engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="RIPOTI_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    storage_path: str = "ripoti.db"

    # Reporting rules
    base_currency: str = "TZS"
    default_tolerance: Decimal = Decimal("0.01")  # smallest monetary unit
    entry_number_width: int = 3  # LD-001

    # Upstream CMS (credit management system) feed
    cms_base_url: str = ""  # Empty = use static fixtures
    cms_api_key: str = ""
    cms_timeout: float = 5.0
    balance_sheet_cache_ttl_seconds: int = 300  # 5 minutes
    agent_banking_cache_ttl_seconds: int = 120  # 2 minutes

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_audit_logging: bool = True
    ledger_feed_enabled: bool = False  # balance sheet leaves follow ledger balances
    load_fixtures_on_startup: bool = True


# Global configuration instance
config = ReportingConfig()


def get_config() -> ReportingConfig:
    """Get global configuration instance"""
    return config


def reload_config(**overrides) -> ReportingConfig:
    """Reload configuration from environment"""
    global config
    config = ReportingConfig(**overrides)
    return config


def resolve_currency(cfg: Optional[ReportingConfig] = None) -> Currency:
    """Currency enum member for the configured base currency"""
    cfg = cfg or get_config()
    return Currency[cfg.base_currency.upper()]

"""
School Ledger - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "School Ledger"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    api_version: str = "v1"
    
    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str = "sqlite+aiosqlite:///./school_ledger.db"
    database_echo: bool = False
    
    # ===========================================
    # LEDGER CONFIGURATION
    # ===========================================
    currency_code: str = "KES"
    entry_ref_prefix_length: int = 3
    
    # ===========================================
    # BUDGET ENFORCEMENT
    # ===========================================
    budget_notice_threshold: int = 80  # percent
    budget_warning_threshold: int = 90  # percent
    
    # ===========================================
    # VOID APPROVAL
    # ===========================================
    void_approval_transaction_type: str = "JOURNAL_VOID"
    void_approval_entry_types: List[str] = ["SALARY", "ASSET_DISPOSAL"]
    void_approval_min_age_days: int = 30  # 0 disables the age rule
    
    # ===========================================
    # ACCESS
    # ===========================================
    period_admin_roles: List[str] = ["PRINCIPAL", "BURSAR"]
    finance_admin_roles: List[str] = ["PRINCIPAL", "BURSAR"]
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env.lower() == "development"
    
    @property
    def is_sqlite(self) -> bool:
        return self.database_url_async.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()

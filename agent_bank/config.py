"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class AgentBankConfig(BaseSettings):
    """AgentBank ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///agent_bank.db"  # memory://, sqlite:///path or postgresql://...

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    payment_request_expiry_days: int = 7
    interest_day_count: int = 365  # Days per year for daily accrual

    # Batch jobs roll back the whole run on any failure
    batch_fail_closed: bool = True

    class Config:
        env_prefix = "AGENTBANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = AgentBankConfig()


def get_config() -> AgentBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AgentBankConfig:
    """Reload configuration from environment"""
    global config
    config = AgentBankConfig()
    return config

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for
environment-based configuration. The configuration is read once at
startup and is immutable afterwards; rotating the session secret means
restarting the process with a new environment.
"""

from pydantic_settings import BaseSettings
from typing import Optional


DEFAULT_JWT_SECRET = "change-me-in-production"


class PaycoreConfig(BaseSettings):
    """paycore service configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///paycore.db"  # memory:// for in-memory
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Session tokens
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "paycore"
    session_ttl_hours: int = 24 * 7
    
    # Credential hashing (scrypt cost parameters)
    scrypt_n: int = 16384
    scrypt_r: int = 8
    scrypt_p: int = 1
    
    # Failed attempt limiting
    max_failed_attempts: int = 5
    attempt_window_seconds: int = 300
    lockout_seconds: int = 900
    
    # Ledger
    ledger_max_retries: int = 5
    # X-Service-Key required to post credits over HTTP; credits are refused when unset
    ledger_service_key: Optional[str] = None
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "PAYCORE_"
        env_file = ".env"
        case_sensitive = False
        frozen = True


# Global configuration instance
config = PaycoreConfig()


def get_config() -> PaycoreConfig:
    """Get global configuration instance"""
    return config


def uses_persistent_storage(settings: PaycoreConfig) -> bool:
    """True when database_url points at a SQLite file rather than memory"""
    url = settings.database_url
    if not url.startswith("sqlite:///"):
        return False
    return url[len("sqlite:///"):] not in ("", ":memory:")


def ensure_secure(settings: PaycoreConfig) -> None:
    """
    Refuse to serve persistent data with the development session secret.
    
    Raises:
        ValueError: If jwt_secret is the default and storage is a file
    """
    if settings.jwt_secret == DEFAULT_JWT_SECRET and uses_persistent_storage(settings):
        raise ValueError(
            "PAYCORE_JWT_SECRET must be set when database_url is a file database"
        )

"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
The configuration is built once at startup and handed to every component explicitly.
"""

from typing import List

from pydantic_settings import BaseSettings


DEFAULT_JWT_SECRET = "change-me-in-production"


class BankConfig(BaseSettings):
    """Internet banking backend configuration"""

    # Database configuration
    database_url: str = "sqlite:///netbank.db"  # "memory://" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    mode: str = "release"  # debug, release or test
    cors_origins: List[str] = ["*"]
    request_timeout_seconds: float = 10.0

    # Token configuration
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_hours: int = 168

    # Login lockout policy
    max_failed_logins: int = 5
    failed_login_window_minutes: int = 15
    lockout_minutes: int = 15

    # Admission control (token bucket)
    rate_limit_refill_per_second: float = 1.0
    rate_limit_burst: int = 10

    # Revocation cache
    revocation_cache_url: str = ""  # Empty = in-process cache, redis://... = shared
    cache_timeout_seconds: float = 0.5

    # Recovery of approvals interrupted before settlement
    stuck_approval_seconds: float = 60.0
    recovery_interval_seconds: float = 30.0  # 0 = only at startup

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "NETBANK_"
        env_file = ".env"
        case_sensitive = False
        frozen = True

    @property
    def is_release(self) -> bool:
        return self.mode == "release"


def load_config(**overrides) -> BankConfig:
    """
    Build the process configuration from the environment.

    Keyword overrides take precedence over environment variables; tests use them
    to get an isolated configuration without touching ``os.environ``.

    Raises:
        ValueError: If the operating mode is unknown or release mode still uses
            the default signing secret.
    """
    config = BankConfig(**overrides)

    if config.mode not in ("debug", "release", "test"):
        raise ValueError(f"Unknown operating mode: {config.mode}")
    if config.is_release and config.jwt_secret == DEFAULT_JWT_SECRET:
        raise ValueError("NETBANK_JWT_SECRET must be set in release mode")
    if config.rate_limit_burst < 1 or config.rate_limit_refill_per_second <= 0:
        raise ValueError("Rate limit burst and refill rate must be positive")

    return config

"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./swapply.db"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    # Security Configuration
    jwt_secret_key: str = "changeme-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60
    auth_cookie_name: str = "swapply_token"

    # Real-time Configuration
    broadcast_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50
    max_connections_per_user: int = 5
    heartbeat_interval_seconds: int = 30
    heartbeat_timeout_seconds: int = 40

    # Chat Configuration
    preview_max_length: int = 100
    history_limit: int = 50

    # Application Configuration
    client_origin: str = "http://localhost:5173"
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    log_level: str = "INFO"
    json_logs: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()

"""
Application configuration.
All settings are loaded from environment variables prefixed with POINTS_
(or a local .env file).
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="POINTS_", env_file=".env", extra="ignore")

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    host: str = "0.0.0.0"
    port: int = 8000
    # Comma-separated. Empty = allow any origin.
    cors_origins: str = ""

    # ===========================================
    # DATABASE
    # ===========================================
    database_url: str = "sqlite:///./db.db"

    # ===========================================
    # RATE LIMITING (per client IP, fixed window)
    # ===========================================
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @property
    def cors_origins_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["*"]


settings = Settings()

"""
ChildGuard - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    
    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )
    
    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json_format: bool = False  # JSON logs for production, human-readable otherwise
    
    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000
    
    # --- Classifier Gateway ---
    # "dummy" = keyword heuristic (default, no network access)
    # "gemini" = Google Gemini generateContent REST API (requires gemini_api_key)
    classifier_backend: str = "dummy"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    classifier_timeout_seconds: float = 15.0
    
    # --- SOS ---
    location_timeout_seconds: float = 10.0
    
    # --- History Windows ---
    trend_window_size: int = 24      # Mood trend shows the newest 24 entries
    alert_history_limit: int = 10    # Guardian dashboard shows the last 10 alerts
    
    # --- Event Bus ---
    subscriber_queue_size: int = 0   # 0 = unbounded per-subscriber queue
    
    # --- Store Failure Handling ---
    store_append_max_attempts: int = 5
    store_retry_delay_seconds: float = 0.5
    
    # --- Privacy Controls ---
    store_transcripts: bool = True   # If False, mood logs keep no transcript text
    anonymize_logs: bool = True      # If True, logs never contain transcript text
    
    # --- Security ---
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    
    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]
    
    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.
    
    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()


# Convenience export
settings = get_settings()

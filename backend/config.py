"""
Configuration management for Park Algo
Uses environment variables with sensible defaults
"""
from pydantic_settings import BaseSettings
from typing import Optional, List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings with validation"""

    # API Configuration
    api_title: str = "Park Algo API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"
    debug: bool = False
    environment: str = "production"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4

    # Database Configuration (Supabase Postgres)
    database_url: str = "postgresql://localhost/park_algo"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30

    # Supabase Auth
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_premium: Optional[str] = None
    stripe_price_pro: Optional[str] = None
    stripe_price_enterprise: Optional[str] = None
    app_url: str = "http://localhost:3000"

    # External APIs
    xai_api_key: Optional[str] = None
    xai_base_url: str = "https://api.x.ai/v1"
    xai_model: str = "grok-beta"
    xai_timeout: int = 30
    mapbox_access_token: Optional[str] = None
    google_maps_api_key: Optional[str] = None
    google_places_api_key: Optional[str] = None
    tfl_api_key: Optional[str] = None
    fcm_server_key: Optional[str] = None
    city_data_timeout: int = 20

    # Spot holds
    hold_reaper_interval: int = 60  # seconds
    hold_payment_window_minutes: int = 10

    # Caching
    redis_url: Optional[str] = None
    cache_ttl: int = 300  # 5 minutes
    prediction_cache_ttl: int = 600  # 10 minutes

    # Security
    cron_secret: Optional[str] = None

    # CORS
    cors_origins: List[str] = ["*"]
    cors_credentials: bool = True
    cors_methods: List[str] = ["*"]
    cors_headers: List[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Performance
    enable_compression: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False

    def missing_integrations(self) -> List[str]:
        """Names of required integration settings that are not configured"""
        required = {
            "SUPABASE_URL": self.supabase_url,
            "SUPABASE_ANON_KEY": self.supabase_anon_key,
            "STRIPE_SECRET_KEY": self.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe_webhook_secret,
        }
        return [name for name, value in required.items() if not value]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

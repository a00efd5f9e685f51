"""Configuration management for the FacePay authorization engine."""

from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Supabase configuration
    supabase_url: str = "http://localhost:54321"
    supabase_key: str = "local-development-key"
    database_timeout: float = 10.0

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    gateway_timeout: float = 15.0
    gateway_max_retries: int = 3

    # Face matching settings
    face_match_threshold: float = 0.6
    face_detection_confidence: float = 0.5
    face_model_bundle: str = "buffalo_l"
    max_face_embeddings: int = 5

    # Payments
    supported_currencies: List[str] = ["usd", "eur", "gbp", "cad", "aud", "jpy"]

    # Rate limiting
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 60

    # Logging configuration
    log_level: str = "INFO"

    @field_validator('supabase_url')
    @classmethod
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL environment variable is required')
        return v

    @field_validator('supabase_key')
    @classmethod
    def validate_supabase_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_KEY environment variable is required')
        return v

    @field_validator('face_match_threshold', 'face_detection_confidence')
    @classmethod
    def validate_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('Face thresholds must be between 0.0 and 1.0')
        return v

    @field_validator('database_timeout', 'gateway_timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Timeouts must be positive')
        return v

    @field_validator('gateway_max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        if v < 1:
            raise ValueError('GATEWAY_MAX_RETRIES must be at least 1')
        return v

    @field_validator('supported_currencies')
    @classmethod
    def normalize_currencies(cls, v):
        return [currency.lower() for currency in v]


# Global settings instance
settings = Settings()

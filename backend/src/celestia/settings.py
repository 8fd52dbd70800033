"""Application settings and configuration."""

import sys

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_JWT_DEFAULTS = {"change-me-in-production", "secret"}


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "celestia"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # console | json
    allowed_origins: str = "http://localhost:3000"
    public_base_url: str = "https://celestia.app"

    # JWT (tokens are issued by the identity service, only verified here)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Database
    database_url: str = "sqlite:///./celestia.db"
    database_echo: bool = False

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_timeout_seconds: float = 10.0

    # Push notifications (FCM HTTP v1)
    firebase_project_id: str | None = None
    google_application_credentials: str | None = None
    push_timeout_seconds: float = 7.0
    push_max_attempts: int = 3

    # Referral rewards
    referral_referrer_extension_days: int = 7
    referral_referred_extension_days: int = 30
    referral_trial_plan: str = "referral_trial"

    # Referral abuse controls
    referral_min_account_age_hours: float = 3.0
    referral_daily_activation_cap: int = 5
    referral_max_activations_per_ip: int = 2
    referral_claim_ttl_seconds: int = 600


# Global settings instance
settings = Settings()

# ── Security validation ──────────────────────────────────────────────
if settings.env == "production":
    if settings.jwt_secret_key in _INSECURE_JWT_DEFAULTS or len(settings.jwt_secret_key) < 32:
        print(
            "\n❌  FATAL: JWT_SECRET_KEY is insecure or too short (min 32 chars).\n"
            "   Set a strong random value:  openssl rand -hex 32\n",
            file=sys.stderr,
        )
        sys.exit(1)

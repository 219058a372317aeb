from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str

    # One JWT secret per token type
    SECRET_KEY: str
    REFRESH_SECRET_KEY: str
    RESET_PASSWORD_SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30
    RESET_TOKEN_EXPIRE_MINUTES: int = 5

    # --- Stripe ---
    STRIPE_SECRET_KEY: str
    STRIPE_WEBHOOK_SECRET: str
    CURRENCY: str = "usd"

    FRONTEND_URL: str = "http://localhost:3000"

    REDIS_URL: str

    # --- Kafka (booking lifecycle events) ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"

    # --- Outbound email ---
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    EMAIL_FROM: str = "Tour Booking <no-reply@tourhub.local>"

    # --- Marketplace rules ---
    HOST_EARNING_RATE: Decimal = Decimal("0.85")
    MIN_PAYOUT_AMOUNT: Decimal = Decimal("50")
    FREE_TOUR_LIMIT: int = 4
    FREE_BLOG_LIMIT: int = 5

    # --- Background jobs ---
    SCHEDULER_POLL_SECONDS: int = 300
    STALE_PAYOUT_MINUTES: int = 30

    # Optional first admin, created at startup when both are set
    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

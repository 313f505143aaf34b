from __future__ import annotations
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "bakery"

    # Razorpay
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    CURRENCY: str = "INR"
    # Gateway rejects zero/negative charges; everything is billed at least this much
    MIN_CHARGEABLE_AMOUNT: float = 1.0

    PAYMENT_OUTBOX_PATH: str = "payment_outbox.json"
    PAYMENT_OUTBOX_MAX_ATTEMPTS: int = 5

    JWT_SECRET_KEY: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Accounts registered with these phone numbers get the admin flag
    ADMIN_PHONES: list[str] = []

    LOG_LEVEL: str = "INFO"


settings = Settings()

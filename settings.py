from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "storefront"

    JWT_SECRET: str = "dev-secret-change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 60 * 24
    COOKIE_SECURE: bool = False

    CORS_ORIGINS: List[str] = ["*"]

    # All amounts are stored and returned in this one currency.
    CURRENCY: str = "INR"
    CART_TAX_RATE: float = 0.08
    FREE_SHIPPING_THRESHOLD: float = 100.0
    FLAT_SHIPPING: float = 10.0
    ORDER_NUMBER_ATTEMPTS: int = 5

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None
    ADMIN_NAME: str = "Store Admin"

    LOG_LEVEL: str = "INFO"
    PORT: int = 8000


@lru_cache
def get_settings() -> Settings:
    return Settings()

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    database_url: str
    paypal_api: str = "https://api-m.paypal.com"
    paypal_client_id: Optional[str] = None
    paypal_secret: Optional[str] = None
    paypal_webhook_id: Optional[str] = None
    paypal_request_prefix: str = "ngo"
    currency: str = "EUR"
    brand_name: str = "NGO Back Office"
    locale: str = "de-AT"
    frontend_url: str = "http://localhost:3000"
    jwt_secret: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            paypal_api=os.getenv("PAYPAL_API", cls.paypal_api).rstrip("/"),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
            paypal_secret=os.getenv("PAYPAL_SECRET") or os.getenv("PAYPAL_CLIENT_SECRET"),
            paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID") or None,
            paypal_request_prefix=os.getenv("PAYPAL_REQUEST_PREFIX", cls.paypal_request_prefix),
            currency=os.getenv("PAYMENTS_CURRENCY", cls.currency).upper(),
            brand_name=os.getenv("PAYMENTS_BRAND_NAME", cls.brand_name),
            locale=os.getenv("PAYMENTS_LOCALE", cls.locale),
            frontend_url=os.getenv("FRONTEND_URL", cls.frontend_url).rstrip("/"),
            jwt_secret=os.getenv("JWT_SECRET"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()

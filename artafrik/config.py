# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

PESAPAL_SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3/api"
PESAPAL_LIVE_URL = "https://pay.pesapal.com/v3/api"


@dataclass
class Settings:
    database_url: Optional[str]
    app_url: str
    pesapal_environment: str
    pesapal_consumer_key: str
    pesapal_consumer_secret: str
    pesapal_timeout: float
    pesapal_verify_ipn: bool
    pesapal_country_code: str
    cache_backend: str
    redis_url: str
    session_secret: str
    admin_username: str
    admin_password: str
    log_level: str
    log_format: str

    @property
    def pesapal_base_url(self) -> str:
        if self.pesapal_environment == "live":
            return PESAPAL_LIVE_URL
        return PESAPAL_SANDBOX_URL

    @property
    def pesapal_configured(self) -> bool:
        return bool(self.pesapal_consumer_key and self.pesapal_consumer_secret)

    @property
    def ipn_url(self) -> str:
        return f"{self.app_url}/api/pesapal/ipn"

    def callback_url(self, order_id: str) -> str:
        return f"{self.app_url}/checkout/success?orderId={order_id}&method=pesapal"


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    environment = os.getenv("PESAPAL_ENVIRONMENT", "sandbox").strip().lower()
    app_url = os.getenv("APP_URL", "http://localhost:3000").strip()
    return Settings(
        database_url=os.environ.get("DATABASE_URL", None),
        app_url=app_url.rstrip("/"),
        pesapal_environment="live" if environment == "live" else "sandbox",
        pesapal_consumer_key=os.getenv("PESAPAL_CONSUMER_KEY", "").strip(),
        pesapal_consumer_secret=os.getenv(
            "PESAPAL_CONSUMER_SECRET", ""
        ).strip(),
        pesapal_timeout=float(os.getenv("PESAPAL_TIMEOUT", "15")),
        pesapal_verify_ipn=_flag("PESAPAL_VERIFY_IPN"),
        pesapal_country_code=os.getenv(
            "PESAPAL_COUNTRY_CODE", "KE"
        ).strip().upper(),
        cache_backend=os.getenv("CACHE_BACKEND", "memory").lower(),
        redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
        session_secret=os.environ.get(
            "SESSION_SECRET", "dev-secret-change-me"
        ),
        admin_username=os.environ.get("ADMIN_USERNAME", "admin"),
        admin_password=os.environ.get("ADMIN_PASSWORD", "supasecret"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "console").lower(),
    )

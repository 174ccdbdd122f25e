import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL")

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY")

    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    PAYPAL_ENVIRONMENT = os.getenv("PAYPAL_ENVIRONMENT", "sandbox")

    JWT_SECRET = os.getenv("JWT_SECRET")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

    SUPPORTED_CURRENCIES = ("EUR", "USD", "GBP", "CHF")
    DEFAULT_CURRENCY = "EUR"

    PROVIDER_TIMEOUT_SECONDS = _int("PROVIDER_TIMEOUT_SECONDS", 10)
    WEBHOOK_RETENTION_DAYS = _int("WEBHOOK_RETENTION_DAYS", 30)

    CHECKOUT_RATE_LIMIT = _int("CHECKOUT_RATE_LIMIT", 10)
    CHECKOUT_RATE_WINDOW_SECONDS = _int("CHECKOUT_RATE_WINDOW_SECONDS", 15 * 60)
    WEBHOOK_RATE_LIMIT = _int("WEBHOOK_RATE_LIMIT", 100)
    WEBHOOK_RATE_WINDOW_SECONDS = _int("WEBHOOK_RATE_WINDOW_SECONDS", 60)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

    @property
    def paypal_base_url(self) -> str:
        if self.PAYPAL_ENVIRONMENT == "production":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def paypal_enabled(self) -> bool:
        return bool(self.PAYPAL_CLIENT_ID and self.PAYPAL_CLIENT_SECRET)


settings = Settings()

import os
from typing import Dict, Optional

DEFAULT_APP_URL = "http://localhost:3000"
DEFAULT_DATABASE_URL = "sqlite:///./billing_sync.db"
DEFAULT_WEBHOOK_TOLERANCE = 300

# Plan names accepted by the checkout endpoint, mapped to the env var holding the Stripe price id
PLAN_PRICE_ENV_VARS = {
    "monthly": "STRIPE_PRICE_MONTHLY",
    "yearly": "STRIPE_PRICE_YEARLY",
}


def get_stripe_api_key() -> Optional[str]:
    return os.getenv("STRIPE_API_KEY") or None


def get_endpoint_secret() -> Optional[str]:
    return os.getenv("STRIPE_ENDPOINT_SECRET") or None


def get_webhook_tolerance() -> int:
    """Maximum age in seconds of a signed webhook timestamp."""
    raw = os.getenv("STRIPE_WEBHOOK_TOLERANCE")
    if not raw:
        return DEFAULT_WEBHOOK_TOLERANCE
    try:
        return int(raw)
    except ValueError:
        raise EnvironmentError(f"STRIPE_WEBHOOK_TOLERANCE must be an integer, got {raw!r}")


def get_plan_prices() -> Dict[str, str]:
    """Return the configured plans as {plan name: price id}, skipping unset ones."""
    plans = {}
    for plan, env_var in PLAN_PRICE_ENV_VARS.items():
        price_id = os.getenv(env_var)
        if price_id:
            plans[plan] = price_id
    return plans


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


def absolute_url(path: str) -> str:
    base = os.getenv("APP_URL", DEFAULT_APP_URL).rstrip("/")
    return f"{base}{path}"

"""
Process configuration read from the environment.

Configuration (environment variables):
- REVENUECAT_WEBHOOK_SECRET:  Shared secret for webhook signatures (unset = verification skipped)
- ADMIN_SECRET:               Secret for the admin override routes (unset = admin routes disabled)
- REVENUECAT_API_KEY:         Bearer key for subscriber queries (unset = reconciliation skipped)
- REVENUECAT_API_BASE:        Provider REST base URL (default: "https://api.revenuecat.com/v1")
- REVENUECAT_ENTITLEMENT_IDS: Comma separated entitlement ids granting the paid tier (default: "pro,premium")
- APP_ENV:                    "production" drops sandbox webhook events (default: "development")
- DATABASE_URL:               SQLAlchemy URL for durable stores (unset = in-memory)
- REDIS_URL:                  Redis URL for a shared usage ledger (used when DATABASE_URL is unset)
- TIER_CONFIG_PATH:           JSON file replacing the built-in tier limits
- RECONCILE_ON_READ:          Query the provider on tier reads (default: "true")
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_REVENUECAT_API_BASE = "https://api.revenuecat.com/v1"


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _get_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    webhook_secret: Optional[str] = None
    admin_secret: Optional[str] = None
    revenuecat_api_key: Optional[str] = None
    revenuecat_api_base: str = DEFAULT_REVENUECAT_API_BASE
    entitlement_ids: Tuple[str, ...] = ("pro", "premium")
    environment: str = "development"
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    tier_config_path: Optional[str] = None
    reconcile_on_read: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def load_settings() -> Settings:
    """Read settings at call time so late-loaded environments are honoured."""
    entitlement_ids = tuple(
        part.strip()
        for part in os.getenv("REVENUECAT_ENTITLEMENT_IDS", "pro,premium").split(",")
        if part.strip()
    )
    return Settings(
        webhook_secret=_get_optional("REVENUECAT_WEBHOOK_SECRET"),
        admin_secret=_get_optional("ADMIN_SECRET"),
        revenuecat_api_key=_get_optional("REVENUECAT_API_KEY"),
        revenuecat_api_base=os.getenv("REVENUECAT_API_BASE", DEFAULT_REVENUECAT_API_BASE).rstrip("/"),
        entitlement_ids=entitlement_ids,
        environment=os.getenv("APP_ENV", "development"),
        database_url=_get_optional("DATABASE_URL"),
        redis_url=_get_optional("REDIS_URL"),
        tier_config_path=_get_optional("TIER_CONFIG_PATH"),
        reconcile_on_read=_get_bool("RECONCILE_ON_READ", "true"),
    )

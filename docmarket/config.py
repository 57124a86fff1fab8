"""Configuration settings for the document marketplace API."""
from __future__ import annotations

import os
from functools import lru_cache


class Settings:
    """Read environment variables for services and secrets."""

    def __init__(self) -> None:
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./docmarket.db")
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY", "sk_test_placeholder")
        self.stripe_publishable_key = os.getenv("STRIPE_PUBLISHABLE_KEY", "pk_test_placeholder")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.stripe_api_base = os.getenv("STRIPE_API_BASE")
        self.webhook_tolerance_seconds = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
        self.currency = os.getenv("CURRENCY", "usd")

        # COMMISSION_PERCENTAGE is the single source of truth for the platform cut.
        commission = float(os.getenv("COMMISSION_PERCENTAGE", "0.15"))
        self.commission_bps = int(round(commission * 10000))
        self.max_downloads = int(os.getenv("MAX_DOWNLOADS", "5"))
        self.max_checkout_items = int(os.getenv("MAX_CHECKOUT_ITEMS", "10"))

        self.fulfillment_retry_attempts = int(os.getenv("FULFILLMENT_RETRY_ATTEMPTS", "3"))
        self.fulfillment_retry_backoff = float(os.getenv("FULFILLMENT_RETRY_BACKOFF_SECONDS", "0.2"))
        self.fulfillment_retry_backoff_max = float(
            os.getenv("FULFILLMENT_RETRY_BACKOFF_MAX_SECONDS", "2.0")
        )
        # Unflagged unsettled orders younger than this are assumed to still be settling.
        self.reconcile_grace_seconds = int(os.getenv("RECONCILE_GRACE_SECONDS", "300"))

        self.jwt_secret = os.getenv("JWT_SECRET", "development-secret")
        self.jwt_cookie_name = os.getenv("JWT_COOKIE_NAME", "docmarket_session")

        self.object_storage_root = os.getenv("OBJECT_STORAGE_ROOT", "./data/uploads")
        self.download_chunk_size = int(os.getenv("DOWNLOAD_CHUNK_SIZE", str(64 * 1024)))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()

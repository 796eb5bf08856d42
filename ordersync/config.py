"""
Centralized configuration for the order sync engine.

Configuration is loaded from environment variables with sensible defaults.

Usage:
    from ordersync.config import config

    page_size = config.crawl.page_size
    interval = config.sync.fast_interval
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

from ordersync.exceptions import ConfigurationError

# Load environment variables
load_dotenv()


@dataclass(frozen=True)
class APIConfig:
    """WooCommerce REST API configuration."""

    store_url: str = field(default_factory=lambda: os.getenv("WOOCOMMERCE_URL", "").rstrip("/"))
    consumer_key: str = field(default_factory=lambda: os.getenv("WOOCOMMERCE_CONSUMER_KEY", ""))
    consumer_secret: str = field(default_factory=lambda: os.getenv("WOOCOMMERCE_CONSUMER_SECRET", ""))
    api_version: str = "wc/v3"

    # Attempt 1 uses request_timeout, retries use the longer retry_timeout
    request_timeout: float = 20.0
    retry_timeout: float = 45.0

    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_jitter: float = 0.5

    @property
    def base_url(self) -> str:
        return f"{self.store_url}/wp-json/{self.api_version}"


@dataclass(frozen=True)
class CrawlConfig:
    """Pagination crawler configuration."""

    page_size: int = 50
    batch_width: int = 5  # concurrent page requests per batch
    batch_delay: float = 1.0  # seconds between batches
    max_items: int = 2000

    # Enumerated when the broad status=any query is unusable
    fallback_statuses: List[str] = field(default_factory=lambda: [
        "pending",
        "processing",
        "on-hold",
        "shipped",
        "completed",
        "cancelled",
        "refunded",
        "failed",
    ])


@dataclass(frozen=True)
class SyncConfig:
    """Adaptive sync loop configuration."""

    fast_interval: float = 120.0  # 2 minutes
    full_interval: float = 600.0  # 10 minutes
    full_every_n: int = 5  # full reconcile after this many fast checks

    # Backoff tiers
    elevated_interval: float = 300.0
    high_backoff_interval: float = 900.0
    elevated_after: int = 1
    high_after: int = 3
    alert_after: int = 3

    fast_check_items: int = 20
    fast_lookback_days: int = 7
    order_concurrency: int = 5
    total_tolerance: float = 0.01
    image_backfill_limit: int = 200  # stored orders re-checked for missing images per full reconcile

    timezone: str = field(default_factory=lambda: os.getenv("SYNC_TIMEZONE", "UTC"))


@dataclass(frozen=True)
class StoreConfig:
    """Local order store configuration."""

    db_path: str = field(
        default_factory=lambda: os.getenv("ORDERSYNC_DB_PATH", "data/orders.duckdb")
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    api: APIConfig = field(default_factory=APIConfig)
    crawl: CrawlConfig = field(default_factory=CrawlConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


# Global config instance
config = AppConfig()


def validate_config(app_config: AppConfig = None) -> None:
    """
    Validate that all required configuration is present.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = app_config or config
    errors = []

    if not cfg.api.store_url:
        errors.append("WOOCOMMERCE_URL is required but not set")
    elif not cfg.api.store_url.startswith(("http://", "https://")):
        errors.append("WOOCOMMERCE_URL must start with http:// or https://")

    if not cfg.api.consumer_key:
        errors.append("WOOCOMMERCE_CONSUMER_KEY is required but not set")
    elif not cfg.api.consumer_key.startswith("ck_"):
        errors.append("WOOCOMMERCE_CONSUMER_KEY appears to be invalid (expected ck_...)")

    if not cfg.api.consumer_secret:
        errors.append("WOOCOMMERCE_CONSUMER_SECRET is required but not set")
    elif not cfg.api.consumer_secret.startswith("cs_"):
        errors.append("WOOCOMMERCE_CONSUMER_SECRET appears to be invalid (expected cs_...)")

    if cfg.api.retry_timeout < cfg.api.request_timeout:
        errors.append("retry_timeout must not be shorter than request_timeout")

    if cfg.crawl.page_size < 1 or cfg.crawl.page_size > 100:
        errors.append("page_size must be between 1 and 100")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

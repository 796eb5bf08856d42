"""
Tests for ordersync.config module.
"""
import pytest

from ordersync.config import APIConfig, AppConfig, CrawlConfig, SyncConfig, validate_config
from ordersync.exceptions import ConfigurationError


def make_config(**api) -> AppConfig:
    values = dict(store_url="https://shop.example.com", consumer_key="ck_abc", consumer_secret="cs_abc")
    values.update(api)
    return AppConfig(api=APIConfig(**values))


class TestDefaults:
    def test_sync_defaults(self):
        sync = SyncConfig()
        assert sync.fast_interval == 120.0
        assert sync.elevated_interval > sync.fast_interval
        assert sync.high_backoff_interval > sync.elevated_interval
        assert sync.alert_after == 3

    def test_crawl_defaults(self):
        crawl = CrawlConfig()
        assert crawl.page_size == 50
        assert "completed" in crawl.fallback_statuses
        assert "any" not in crawl.fallback_statuses

    def test_base_url(self):
        assert APIConfig(store_url="https://shop.example.com").base_url == (
            "https://shop.example.com/wp-json/wc/v3"
        )

    def test_env_store_url_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("WOOCOMMERCE_URL", "https://shop.example.com/")
        assert APIConfig().store_url == "https://shop.example.com"

    def test_db_path_from_env(self, monkeypatch):
        monkeypatch.setenv("ORDERSYNC_DB_PATH", "/tmp/orders.duckdb")
        assert AppConfig().store.db_path == "/tmp/orders.duckdb"


class TestValidateConfig:
    def test_valid(self):
        validate_config(make_config())

    def test_missing_everything(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(make_config(store_url="", consumer_key="", consumer_secret=""))
        message = str(exc_info.value)
        assert "WOOCOMMERCE_URL is required" in message
        assert "WOOCOMMERCE_CONSUMER_KEY is required" in message
        assert "WOOCOMMERCE_CONSUMER_SECRET is required" in message

    def test_bad_prefixes(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(make_config(store_url="shop.example.com", consumer_key="abc", consumer_secret="xyz"))
        message = str(exc_info.value)
        assert "http:// or https://" in message
        assert "expected ck_" in message
        assert "expected cs_" in message

    def test_retry_timeout_shorter_than_baseline(self):
        with pytest.raises(ConfigurationError, match="retry_timeout"):
            validate_config(make_config(request_timeout=30.0, retry_timeout=10.0))

    def test_page_size_bounds(self):
        cfg = AppConfig(
            api=make_config().api,
            crawl=CrawlConfig(page_size=500),
        )
        with pytest.raises(ConfigurationError, match="page_size"):
            validate_config(cfg)

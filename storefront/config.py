"""
Configuration management for the storefront replica.

Loads defaults from a YAML config file, then applies environment variables
(loaded from .env) on top. Secrets are only ever read from the environment.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of storefront package)."""
    return Path(__file__).resolve().parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class StorefrontConfig:
    """Configuration for the replica, cache and upstream catalog client."""

    # Replica store
    database_url: str = "sqlite:///./replica.db"
    sync_reject_stale: bool = True      # Skip snapshots older than the stored row

    # Cache
    cache_enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    cache_namespace: str = "storefront"
    cache_ttl_product: int = 3600       # Single product entries
    cache_ttl_list: int = 900           # Product list entries

    # Upstream catalog (WooCommerce REST API)
    wc_url: str = "https://shopwice.com"
    wc_consumer_key: str = ""
    wc_consumer_secret: str = ""
    wc_request_timeout: float = 30.0

    # Webhooks
    webhook_secret: str = ""

    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "StorefrontConfig":
        """Load configuration from YAML file. Missing file yields defaults."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        core: Dict[str, Any] = data.get('storefront', {})
        cache: Dict[str, Any] = data.get('cache', {})
        catalog: Dict[str, Any] = data.get('catalog', {})

        return cls(
            database_url=core.get('database_url', cls.database_url),
            sync_reject_stale=core.get('sync_reject_stale', True),
            log_level=str(core.get('log_level', cls.log_level)).upper(),
            cache_enabled=cache.get('enabled', True),
            redis_url=cache.get('redis_url', cls.redis_url),
            cache_namespace=cache.get('namespace', cls.cache_namespace),
            cache_ttl_product=int(cache.get('ttl_product', cls.cache_ttl_product)),
            cache_ttl_list=int(cache.get('ttl_list', cls.cache_ttl_list)),
            wc_url=catalog.get('url', cls.wc_url),
            wc_request_timeout=float(catalog.get('request_timeout', cls.wc_request_timeout)),
        )

    @classmethod
    def from_env(cls, config_path: Optional[Path] = None) -> "StorefrontConfig":
        """YAML defaults overridden by environment variables."""
        base = cls.from_yaml(config_path)
        return cls(
            database_url=os.getenv("DATABASE_URL") or base.database_url,
            sync_reject_stale=_env_bool("SYNC_REJECT_STALE", base.sync_reject_stale),
            cache_enabled=_env_bool("CACHE_ENABLED", base.cache_enabled),
            redis_url=os.getenv("REDIS_URL") or base.redis_url,
            cache_namespace=os.getenv("CACHE_NAMESPACE") or base.cache_namespace,
            cache_ttl_product=int(os.getenv("CACHE_TTL_PRODUCT", base.cache_ttl_product)),
            cache_ttl_list=int(os.getenv("CACHE_TTL_LIST", base.cache_ttl_list)),
            wc_url=(os.getenv("WC_URL") or base.wc_url).rstrip("/"),
            wc_consumer_key=os.getenv("WC_CONSUMER_KEY", ""),
            wc_consumer_secret=os.getenv("WC_CONSUMER_SECRET", ""),
            wc_request_timeout=float(os.getenv("WC_REQUEST_TIMEOUT", base.wc_request_timeout)),
            webhook_secret=os.getenv("WEBHOOK_SECRET", ""),
            log_level=os.getenv("LOG_LEVEL", base.log_level).upper(),
        )


# Global config instance
_config: Optional[StorefrontConfig] = None


def get_config() -> StorefrontConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = StorefrontConfig.from_env()
    return _config


def set_config(config: StorefrontConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config

"""
Rebuild the replica from the upstream catalog.

Walks every /products page (per_page 50 by default) and syncs each item,
then bumps the cache version. Safe to re-run at any time: every write is an
idempotent overwrite.

Run: python -m storefront.resync [--product-id ID] [--per-page N] [--variations]
"""

import argparse
import sys
from typing import List, Optional

from storefront.cache import CacheClient, CacheCoordinator
from storefront.catalog_client import CatalogClient
from storefront.catalog_service import CatalogService
from storefront.config import StorefrontConfig, get_config
from storefront.database import ReplicaStore
from storefront.logger import configure_logging, get_logger
from storefront.metrics import MetricsCollector
from storefront.replicator import Replicator

logger = get_logger("resync")


def build_service(config: StorefrontConfig, metrics: MetricsCollector) -> CatalogService:
    store = ReplicaStore(config.database_url).open()
    store.create_schema()
    cache_client = CacheClient.from_config(config, metrics=metrics) if config.cache_enabled else None
    coordinator = CacheCoordinator(
        cache_client, metrics=metrics, ttl_product=config.cache_ttl_product, ttl_list=config.cache_ttl_list
    )
    replicator = Replicator(store, reject_stale=config.sync_reject_stale, metrics=metrics)
    return CatalogService(CatalogClient.from_config(config), replicator, coordinator, store, metrics=metrics)


def main(argv: Optional[List[str]] = None, service: Optional[CatalogService] = None) -> int:
    parser = argparse.ArgumentParser(description="Resync the catalog replica from WooCommerce")
    parser.add_argument("--product-id", type=int, help="Resync a single product instead of the whole catalog")
    parser.add_argument("--per-page", type=int, default=50, help="Upstream page size (max 100)")
    parser.add_argument("--variations", action="store_true", help="Also sync variations of variable products")
    args = parser.parse_args(argv)

    config = get_config()
    configure_logging(config.log_level)
    owns_service = service is None
    service = service or build_service(config, MetricsCollector())
    try:
        if args.product_id:
            result = service.resync_product(args.product_id, include_variations=args.variations)
            logger.info("Product %s: %s", result.item_id, "skipped (stale)" if result.skipped else "synced")
            return 0

        summary = service.resync_all(per_page=args.per_page, include_variations=args.variations)
        if summary["failed_ids"]:
            logger.warning("Failed items: %s", ", ".join(str(i) for i in summary["failed_ids"]))
        return 1 if summary["failed"] else 0
    finally:
        if owns_service:
            service.client.close()
            service.store.close()


if __name__ == "__main__":
    sys.exit(main())

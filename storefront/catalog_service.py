"""
Catalog service: write path through the upstream catalog, read path through
the cache and the replica.

Write path:
    upstream write -> Replicator.sync(returned item) -> invalidate_item + invalidate_all

Read path:
    CacheCoordinator -> (miss) ProductQueryBuilder / CatalogLoaders -> ReplicaStore

Upstream failures surface to the caller and no sync is attempted. Replica
failures after a successful upstream write are logged and the upstream result
is still returned; the next webhook delivery or resync repairs the replica.
"""

import time
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from storefront.cache import CacheCoordinator
from storefront.catalog_client import CatalogClient
from storefront.database import ReplicaStore
from storefront.loaders import CatalogLoaders
from storefront.logger import get_logger
from storefront.metrics import MetricsCollector
from storefront.query_builder import ProductQueryBuilder
from storefront.replicator import Replicator, SyncError, SyncResult
from storefront.schemas import Pagination, ProductFilter

logger = get_logger("catalog_service")


class CatalogService:
    def __init__(
        self,
        client: CatalogClient,
        replicator: Replicator,
        cache: CacheCoordinator,
        store: ReplicaStore,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.replicator = replicator
        self.cache = cache
        self.store = store
        self.builder = ProductQueryBuilder(store)
        self.metrics = metrics

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def create_product(self, data: Dict[str, Any]) -> Dict[str, Any]:
        item = self.client.create_product(data)
        self._replicate(item)
        return item

    def update_product(self, product_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        item = self.client.update_product(product_id, data)
        self._replicate(item)
        return item

    def delete_product(self, product_id: int, force: bool = True) -> Dict[str, Any]:
        result = self.client.delete_product(product_id, force=force)
        try:
            self.replicator.delete(product_id)
        except SyncError as e:
            logger.error("Product %s deleted upstream but not in replica: %s", product_id, e)
        finally:
            self._invalidate(product_id)
        return result

    def _replicate(self, item: Dict[str, Any]) -> None:
        item_id = item.get("id") if isinstance(item, dict) else None
        try:
            self.replicator.sync(item)
        except SyncError as e:
            logger.error("Item %s written upstream but replica sync failed: %s", item_id, e)
        except ValidationError as e:
            logger.error("Upstream returned an unusable item payload: %s", e)
        finally:
            if item_id:
                self._invalidate(item_id)

    # ------------------------------------------------------------------
    # Sync entry points (webhooks, resync jobs)
    # ------------------------------------------------------------------

    def sync_item(self, payload: Dict[str, Any]) -> SyncResult:
        """Apply one pushed snapshot. SyncError propagates so the caller can ask for redelivery."""
        result = self.replicator.sync(payload)
        self._invalidate(result.item_id)
        return result

    def remove_item(self, item_id: int) -> None:
        self.replicator.delete(item_id)
        self._invalidate(item_id)

    def sync_term(self, term: Dict[str, Any], taxonomy: str) -> Optional[int]:
        tt_id = self.replicator.sync_term(term, taxonomy)
        self.cache.invalidate_all()
        return tt_id

    def delete_term(self, term_id: int, taxonomy: str) -> None:
        self.replicator.delete_term(term_id, taxonomy)
        self.cache.invalidate_all()

    def resync_product(self, product_id: int, include_variations: bool = True) -> SyncResult:
        """Fetch the current upstream snapshot and apply it."""
        item = self.client.get_product(product_id)
        result = self.sync_item(item)
        if include_variations and item.get("type") == "variable":
            self.sync_variations(product_id)
        return result

    def sync_variations(self, product_id: int) -> List[SyncResult]:
        results = []
        for variation in self.client.list_variations(product_id):
            variation = {**variation, "type": "variation"}
            if not variation.get("parent_id"):
                variation["parent_id"] = product_id
            results.append(self.replicator.sync(variation))
            self.cache.invalidate_item(variation["id"])
        return results

    def resync_all(self, per_page: int = 50, include_variations: bool = False) -> Dict[str, Any]:
        """
        Walk every upstream product page and sync each item.

        A failing item is logged and counted; it never stops the run. Upstream
        paging errors do stop it, since later pages can't be reached.
        """
        counts: Dict[str, Any] = defaultdict(int)
        failed_ids: List[Any] = []
        started = time.perf_counter()

        for item in self.client.iter_products(per_page=per_page):
            item_id = item.get("id")
            try:
                result = self.replicator.sync(item)
                if include_variations and item.get("type") == "variable":
                    self.sync_variations(item_id)
            except (SyncError, ValidationError) as e:
                logger.error("Resync of item %s failed: %s", item_id, e)
                counts["failed"] += 1
                failed_ids.append(item_id)
                continue
            counts["skipped" if result.skipped else "synced"] += 1
            self.cache.invalidate_item(item_id)

        self.cache.invalidate_all()
        elapsed = time.perf_counter() - started
        logger.info(
            "Resync finished in %.1fs: %d synced, %d skipped, %d failed",
            elapsed, counts["synced"], counts["skipped"], counts["failed"],
        )
        return {
            "synced": counts["synced"],
            "skipped": counts["skipped"],
            "failed": counts["failed"],
            "failed_ids": failed_ids,
        }

    def _invalidate(self, item_id: int) -> None:
        self.cache.invalidate_item(item_id)
        self.cache.invalidate_all()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        started = time.perf_counter()

        def compute():
            loaders = CatalogLoaders(self.store)
            return self._build_products(loaders, [product_id])[0]

        product = self.cache.get_product(product_id, compute)
        self._latency("get_product", started)
        return product

    def list_products(
        self,
        filters: Optional[ProductFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> Dict[str, Any]:
        filters = filters or ProductFilter()
        pagination = pagination or Pagination()
        started = time.perf_counter()

        def compute():
            page = self.builder.list_products(filters, pagination)
            loaders = CatalogLoaders(self.store)
            nodes = self._build_products(loaders, page.ids)
            return {
                "nodes": [node for node in nodes if node is not None],
                "edges": [
                    {"cursor": cursor, "node_id": item_id}
                    for cursor, item_id in zip(page.cursors, page.ids)
                ],
                "total_count": page.total_count,
                "page_info": page.page_info.model_dump(),
            }

        signature = {
            "filter": filters.model_dump(mode="json"),
            "pagination": pagination.model_dump(mode="json"),
        }
        result = self.cache.list_products(signature, compute)
        self._latency("list_products", started)
        return result

    def _build_products(self, loaders: CatalogLoaders, ids: List[int]) -> List[Optional[Dict[str, Any]]]:
        """Assemble product dicts for ``ids`` with one query per loader dimension."""
        loaders.schedule_products(ids)
        summaries = loaders.summary.load_many(ids)
        thumbnails = loaders.thumbnail_id.load_many(ids)
        galleries = loaders.gallery_ids.load_many(ids)

        image_ids = [i for i in thumbnails if i] + [i for gallery in galleries for i in gallery]
        loaders.image.load_many(image_ids)

        variation_ids = [s["id"] for s in summaries if s and s["type"] == "product_variation"]
        loaders.variation_attributes.load_many(variation_ids)

        products: List[Optional[Dict[str, Any]]] = []
        for item_id, summary, thumb_id, gallery in zip(ids, summaries, thumbnails, galleries):
            if summary is None:
                products.append(None)
                continue
            meta = loaders.meta.load(item_id)
            product = dict(summary)
            product.update({
                "sku": loaders.sku.load(item_id),
                "short_description": loaders.excerpt.load(item_id),
                "regular_price": meta.get("_regular_price", "0"),
                "sale_price": meta.get("_sale_price", ""),
                "stock_quantity": meta.get("_stock"),
                "stock_status": meta.get("_stock_status") or summary["stock_status"],
                "total_sales": meta.get("total_sales", "0"),
                "vendor_id": meta.get("_wcfm_product_author"),
                "image": loaders.image.load(thumb_id) if thumb_id else None,
                "gallery": [img for img in loaders.image.load_many(gallery) if img is not None],
                "terms": _group_terms(loaders.terms.load(item_id)),
            })
            if summary["type"] == "product_variation":
                product["attributes"] = loaders.variation_attributes.load(item_id)
            products.append(product)
        return products

    def _latency(self, operation: str, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_latency(operation, (time.perf_counter() - started) * 1000)


def _group_terms(terms: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for term in terms:
        grouped[term["taxonomy"]].append({"id": term["id"], "name": term["name"], "slug": term["slug"]})
    return dict(grouped)

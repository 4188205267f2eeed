"""Pytest configuration for storefront replica tests."""

from typing import Any, Dict, List, Optional

import fakeredis
import pytest
from sqlalchemy import select

from storefront.cache import CacheClient, CacheCoordinator
from storefront.database import ReplicaStore
from storefront.metrics import MetricsCollector
from storefront.models import Post, PostMeta, ProductMetaLookup, Term, TermMeta, TermRelationship, TermTaxonomy
from storefront.replicator import Replicator


# ---------------------------------------------------------------------------
# Replica store: fresh in-memory SQLite database per test
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    s = ReplicaStore("sqlite://").open()
    s.create_schema()
    yield s
    s.close()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def replicator(store, metrics):
    return Replicator(store, reject_stale=True, metrics=metrics)


# ---------------------------------------------------------------------------
# Cache: fakeredis with its own server per test
# ---------------------------------------------------------------------------

@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache_client(redis_client, metrics):
    return CacheClient(redis_client, namespace="test", metrics=metrics)


@pytest.fixture
def coordinator(cache_client, metrics):
    return CacheCoordinator(cache_client, metrics=metrics, ttl_product=3600, ttl_list=900)


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------

def make_term(term_id: int, slug: Optional[str] = None, name: Optional[str] = None, **extra) -> Dict[str, Any]:
    slug = slug or f"term-{term_id}"
    return {"id": term_id, "name": name or slug.replace("-", " ").title(), "slug": slug, **extra}


def make_item(
    item_id: int = 100,
    date: str = "2024-01-01T10:00:00",
    modified: str = "2024-01-02T10:00:00",
    **overrides,
) -> Dict[str, Any]:
    """WooCommerce wc/v3 product payload with sensible defaults."""
    item = {
        "id": item_id,
        "name": f"Product {item_id}",
        "slug": f"product-{item_id}",
        "permalink": f"https://shop.test/product/product-{item_id}/",
        "type": "simple",
        "status": "publish",
        "description": f"<p>Description of product {item_id}</p>",
        "short_description": f"Short {item_id}",
        "sku": f"SKU-{item_id}",
        "price": "19.99",
        "regular_price": "24.99",
        "sale_price": "19.99",
        "date_created": date,
        "date_created_gmt": date,
        "date_modified": modified,
        "date_modified_gmt": modified,
        "manage_stock": True,
        "stock_quantity": 5,
        "stock_status": "instock",
        "total_sales": 3,
        "average_rating": "4.50",
        "rating_count": 2,
        "categories": [make_term(10, "shoes")],
        "tags": [],
        "images": [
            {"id": 9000 + item_id, "src": f"https://cdn.shop.test/{item_id}-a.jpg", "name": "front", "alt": "Front"},
        ],
    }
    item.update(overrides)
    return item


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def meta_for(store: ReplicaStore, post_id: int) -> Dict[str, str]:
    with store.session() as session:
        rows = session.execute(
            select(PostMeta.meta_key, PostMeta.meta_value).where(PostMeta.post_id == post_id)
        ).all()
    return dict(rows)


def linked_terms(store: ReplicaStore, item_id: int, taxonomy: str) -> List[int]:
    with store.session() as session:
        rows = session.scalars(
            select(TermTaxonomy.term_id)
            .join(TermRelationship, TermRelationship.term_taxonomy_id == TermTaxonomy.term_taxonomy_id)
            .where(TermRelationship.object_id == item_id, TermTaxonomy.taxonomy == taxonomy)
        ).all()
    return sorted(rows)


def term_count(store: ReplicaStore, term_id: int, taxonomy: str) -> Optional[int]:
    with store.session() as session:
        return session.scalar(
            select(TermTaxonomy.count).where(TermTaxonomy.term_id == term_id, TermTaxonomy.taxonomy == taxonomy)
        )


def dump_tables(store: ReplicaStore) -> Dict[str, List[tuple]]:
    """Every replica row, sorted, for whole-database comparisons."""
    out = {}
    with store.session() as session:
        for model in (Post, PostMeta, Term, TermTaxonomy, TermRelationship, TermMeta, ProductMetaLookup):
            table = model.__table__
            rows = session.execute(select(*table.columns)).all()
            out[table.name] = sorted(tuple(row) for row in rows)
    return out

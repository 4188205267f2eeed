"""
Request-scoped batched loaders over the replica.

Resolving N products field by field would run one query per product per
field. A ``BatchLoader`` collects keys (``schedule``) and resolves all pending
keys with a single ``IN (...)`` query the first time any value is needed.
Results are cached on the loader, so a key is fetched at most once per
request. Build a new ``CatalogLoaders`` for every request; never share one.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from sqlalchemy import select

from storefront.database import ReplicaStore
from storefront.logger import get_logger
from storefront.models import Post, PostMeta, ProductMetaLookup, Term, TermRelationship, TermTaxonomy

logger = get_logger("loaders")

# Attribute keys returned by the ``meta`` dimension
SUMMARY_META_KEYS = (
    "_price",
    "_regular_price",
    "_sale_price",
    "total_sales",
    "_stock",
    "_stock_status",
    "_manage_stock",
    "_product_type",
    "_wc_average_rating",
    "_wc_rating_count",
    "_upsell_ids",
    "_crosssell_ids",
    "_weight",
    "_wcfm_product_author",
)

BatchFn = Callable[[List[Any]], Dict[Any, Any]]


class BatchLoader:
    """
    Deduplicating batch loader for one dimension.

    Args:
        batch_fn: takes a list of unique keys and returns {key: value} for the
            keys it found; missing keys get ``default``
        default: value for keys the batch did not return. Lists and dicts are
            copied per key so callers can't mutate each other's results.
        name: used in debug logs
    """

    def __init__(self, batch_fn: BatchFn, default: Any = None, name: str = "loader"):
        self.batch_fn = batch_fn
        self.default = default
        self.name = name
        self._cache: Dict[Hashable, Any] = {}
        self._pending: List[Hashable] = []
        self.batches = 0

    def schedule(self, key: Hashable) -> None:
        """Queue a key for the next batch without resolving it."""
        if key is None or key in self._cache or key in self._pending:
            return
        self._pending.append(key)

    def load(self, key: Hashable) -> Any:
        if key is None:
            return self._default()
        return self.load_many([key])[0]

    def load_many(self, keys: Sequence[Hashable]) -> List[Any]:
        """Values for ``keys`` in input order; duplicates allowed."""
        for key in keys:
            self.schedule(key)
        self._dispatch()
        return [self._cache[key] if key is not None else self._default() for key in keys]

    def _dispatch(self) -> None:
        if not self._pending:
            return
        keys, self._pending = self._pending, []
        found = self.batch_fn(keys)
        self.batches += 1
        logger.debug("%s: resolved %d keys in one batch", self.name, len(keys))
        for key in keys:
            self._cache[key] = found[key] if key in found else self._default()

    def _default(self) -> Any:
        if isinstance(self.default, (list, dict)):
            return type(self.default)()
        return self.default


class CatalogLoaders:
    """All loader dimensions for one request."""

    def __init__(self, store: ReplicaStore):
        self.store = store
        self.sku = BatchLoader(self._single_meta("_sku"), default="", name="sku")
        self.thumbnail_id = BatchLoader(self._thumbnail_ids, default=None, name="thumbnail_id")
        self.gallery_ids = BatchLoader(self._gallery_ids, default=[], name="gallery_ids")
        self.terms = BatchLoader(self._terms, default=[], name="terms")
        self.meta = BatchLoader(self._meta, default={}, name="meta")
        self.excerpt = BatchLoader(self._excerpts, default="", name="excerpt")
        self.image = BatchLoader(self._images, default=None, name="image")
        self.variation_attributes = BatchLoader(self._variation_attributes, default={}, name="variation_attributes")
        self.summary = BatchLoader(self._summaries, default=None, name="summary")

    def schedule_products(self, ids: Iterable[int]) -> None:
        """Queue every per-product dimension for ``ids`` so each resolves in one query."""
        for item_id in ids:
            for loader in (self.sku, self.thumbnail_id, self.gallery_ids, self.terms,
                           self.meta, self.excerpt, self.summary):
                loader.schedule(item_id)

    @property
    def batch_count(self) -> int:
        return sum(
            loader.batches
            for loader in (self.sku, self.thumbnail_id, self.gallery_ids, self.terms, self.meta,
                           self.excerpt, self.image, self.variation_attributes, self.summary)
        )

    # ------------------------------------------------------------------
    # Batch functions (one query each)
    # ------------------------------------------------------------------

    def _single_meta(self, meta_key: str) -> BatchFn:
        def batch(ids: List[int]) -> Dict[int, Any]:
            with self.store.session() as session:
                rows = session.execute(
                    select(PostMeta.post_id, PostMeta.meta_value).where(
                        PostMeta.meta_key == meta_key, PostMeta.post_id.in_(ids)
                    )
                ).all()
            return {post_id: value or "" for post_id, value in rows}
        return batch

    def _thumbnail_ids(self, ids: List[int]) -> Dict[int, Optional[int]]:
        raw = self._single_meta("_thumbnail_id")(ids)
        return {post_id: _to_id(value) for post_id, value in raw.items()}

    def _gallery_ids(self, ids: List[int]) -> Dict[int, List[int]]:
        raw = self._single_meta("_product_image_gallery")(ids)
        out: Dict[int, List[int]] = {}
        for post_id, value in raw.items():
            out[post_id] = [i for i in (_to_id(part) for part in value.split(",")) if i is not None]
        return out

    def _terms(self, ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
        with self.store.session() as session:
            rows = session.execute(
                select(
                    TermRelationship.object_id,
                    Term.term_id,
                    Term.name,
                    Term.slug,
                    TermTaxonomy.taxonomy,
                    TermTaxonomy.term_taxonomy_id,
                )
                .join(TermTaxonomy, TermRelationship.term_taxonomy_id == TermTaxonomy.term_taxonomy_id)
                .join(Term, TermTaxonomy.term_id == Term.term_id)
                .where(TermRelationship.object_id.in_(ids))
                .order_by(TermRelationship.object_id, TermRelationship.term_order, Term.term_id)
            ).all()
        out: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
        for object_id, term_id, name, slug, taxonomy, tt_id in rows:
            out[object_id].append({
                "id": term_id,
                "name": name,
                "slug": slug,
                "taxonomy": taxonomy,
                "term_taxonomy_id": tt_id,
            })
        return out

    def _meta(self, ids: List[int]) -> Dict[int, Dict[str, str]]:
        with self.store.session() as session:
            rows = session.execute(
                select(PostMeta.post_id, PostMeta.meta_key, PostMeta.meta_value).where(
                    PostMeta.post_id.in_(ids), PostMeta.meta_key.in_(SUMMARY_META_KEYS)
                )
            ).all()
        out: Dict[int, Dict[str, str]] = defaultdict(dict)
        for post_id, key, value in rows:
            out[post_id][key] = value
        return out

    def _excerpts(self, ids: List[int]) -> Dict[int, str]:
        with self.store.session() as session:
            rows = session.execute(select(Post.id, Post.post_excerpt).where(Post.id.in_(ids))).all()
        return {post_id: excerpt or "" for post_id, excerpt in rows}

    def _images(self, ids: List[int]) -> Dict[int, Dict[str, Any]]:
        with self.store.session() as session:
            rows = session.execute(
                select(Post.id, Post.guid, Post.post_title, Post.post_excerpt).where(Post.id.in_(ids))
            ).all()
        out = {}
        for image_id, guid, title, alt in rows:
            if not guid:
                continue
            out[image_id] = {
                "id": image_id,
                "src": guid,
                "source_url": guid,
                "title": title or "",
                "alt": alt or title or "",
            }
        return out

    def _variation_attributes(self, ids: List[int]) -> Dict[int, Dict[str, str]]:
        with self.store.session() as session:
            rows = session.execute(
                select(PostMeta.post_id, PostMeta.meta_key, PostMeta.meta_value).where(
                    PostMeta.post_id.in_(ids), PostMeta.meta_key.like("attribute_%")
                )
            ).all()
        out: Dict[int, Dict[str, str]] = defaultdict(dict)
        for post_id, key, value in rows:
            out[post_id][key] = value
        return out

    def _summaries(self, ids: List[int]) -> Dict[int, Dict[str, Any]]:
        with self.store.session() as session:
            rows = session.execute(
                select(
                    Post.id,
                    Post.post_title,
                    Post.post_name,
                    Post.post_type,
                    Post.post_status,
                    Post.post_parent,
                    Post.post_date,
                    ProductMetaLookup.min_price,
                    ProductMetaLookup.onsale,
                    ProductMetaLookup.stock_status,
                    ProductMetaLookup.average_rating,
                )
                .outerjoin(ProductMetaLookup, ProductMetaLookup.product_id == Post.id)
                .where(Post.id.in_(ids))
            ).all()
        out = {}
        for row in rows:
            out[row.id] = {
                "id": row.id,
                "name": row.post_title,
                "slug": row.post_name,
                "type": row.post_type,
                "status": row.post_status,
                "parent_id": row.post_parent,
                "date_created": row.post_date.isoformat() if row.post_date else None,
                "price": row.min_price if row.min_price is not None else 0.0,
                "on_sale": bool(row.onsale),
                "stock_status": row.stock_status or "",
                "average_rating": row.average_rating or 0.0,
            }
        return out


def _to_id(value: Any) -> Optional[int]:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None

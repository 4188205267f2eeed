"""
Product list query builder.

Each active filter becomes a typed predicate that adds its own aliased joins
and bound parameters to one SELECT. Predicates are ANDed with each other;
multi-valued filters match any of their values (IN). Results are always
ordered newest first (post_date DESC, ID DESC) so pagination is deterministic.

Pagination:
- offset mode: page / per_page
- cursor mode: first / after, where a cursor is base64("cursor:<offset>") of
  the row's zero-based position in the full result. ``after`` resumes at the
  next position, so inserting newer items between requests shifts rows and a
  cursor walk can repeat an item. Callers that need a stable walk should page
  by offset within a short window or re-query from the start.
"""

import base64
import binascii
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from sqlalchemy import Select, distinct, func, or_, select
from sqlalchemy.orm import aliased

from storefront.database import ReplicaStore
from storefront.logger import get_logger
from storefront.models import (
    POST_TYPE_PRODUCT,
    Post,
    PostMeta,
    ProductMetaLookup,
    Term,
    TermRelationship,
    TermTaxonomy,
)
from storefront.replicator import BRAND_TAXONOMIES, VENDOR_META_KEY
from storefront.schemas import PageInfo, Pagination, ProductFilter, ProductPage

logger = get_logger("query_builder")

CURSOR_PREFIX = "cursor:"


class InvalidCursorError(ValueError):
    """An ``after`` cursor that doesn't decode to cursor:<offset>."""


def encode_cursor(offset: int) -> str:
    return base64.b64encode(f"{CURSOR_PREFIX}{offset}".encode()).decode()


def decode_cursor(cursor: str) -> int:
    """Zero-based offset the cursor points at."""
    try:
        decoded = base64.b64decode(cursor.encode(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}") from e
    if not decoded.startswith(CURSOR_PREFIX):
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}")
    try:
        offset = int(decoded[len(CURSOR_PREFIX):])
    except ValueError as e:
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}") from e
    if offset < 0:
        raise InvalidCursorError(f"Negative cursor offset: {cursor!r}")
    return offset


#
# Predicates
#

class Predicate:
    """Adds joins and WHERE clauses for one filter to a statement over Post."""

    def apply(self, stmt: Select) -> Select:
        raise NotImplementedError


@dataclass
class StatusPredicate(Predicate):
    status: str = "publish"
    post_type: str = POST_TYPE_PRODUCT

    def apply(self, stmt: Select) -> Select:
        return stmt.where(Post.post_type == self.post_type, Post.post_status == self.status)


@dataclass
class SearchPredicate(Predicate):
    """Case-insensitive substring match; % and _ in the text match literally."""
    text: str

    def apply(self, stmt: Select) -> Select:
        escaped = self.text.replace("/", "//").replace("%", "/%").replace("_", "/_")
        pattern = f"%{escaped}%"
        return stmt.where(
            or_(
                Post.post_title.ilike(pattern, escape="/"),
                Post.post_content.ilike(pattern, escape="/"),
            )
        )


@dataclass
class TaxonomyPredicate(Predicate):
    """
    Item linked to at least one matching term in one of ``taxonomies``.

    Terms are matched by slug, or by term id when ``term_ids`` is given.
    """
    taxonomies: Sequence[str]
    slugs: Sequence[str] = field(default_factory=list)
    term_ids: Sequence[int] = field(default_factory=list)

    def apply(self, stmt: Select) -> Select:
        rel = aliased(TermRelationship)
        tax = aliased(TermTaxonomy)
        stmt = (
            stmt.join(rel, rel.object_id == Post.id)
            .join(tax, tax.term_taxonomy_id == rel.term_taxonomy_id)
        )
        if len(self.taxonomies) == 1:
            stmt = stmt.where(tax.taxonomy == self.taxonomies[0])
        else:
            stmt = stmt.where(tax.taxonomy.in_(list(self.taxonomies)))

        if self.term_ids:
            stmt = stmt.where(tax.term_id.in_(list(self.term_ids)))
        if self.slugs:
            term = aliased(Term)
            stmt = stmt.join(term, term.term_id == tax.term_id).where(term.slug.in_(list(self.slugs)))
        return stmt


@dataclass
class PriceRangePredicate(Predicate):
    min_price: Optional[float] = None
    max_price: Optional[float] = None

    def apply(self, stmt: Select) -> Select:
        lookup = aliased(ProductMetaLookup)
        stmt = stmt.join(lookup, lookup.product_id == Post.id)
        if self.min_price is not None:
            stmt = stmt.where(lookup.min_price >= self.min_price)
        if self.max_price is not None:
            stmt = stmt.where(lookup.max_price <= self.max_price)
        return stmt


@dataclass
class VendorPredicate(Predicate):
    vendor_id: Union[int, str]

    def apply(self, stmt: Select) -> Select:
        meta = aliased(PostMeta)
        return stmt.join(meta, meta.post_id == Post.id).where(
            meta.meta_key == VENDOR_META_KEY, meta.meta_value == str(self.vendor_id)
        )


def build_predicates(filters: ProductFilter) -> List[Predicate]:
    predicates: List[Predicate] = [StatusPredicate(status=filters.status)]

    if filters.search:
        predicates.append(SearchPredicate(filters.search))

    if filters.category is not None and str(filters.category).strip():
        category = str(filters.category).strip()
        if category.isdigit():
            predicates.append(TaxonomyPredicate(["product_cat"], term_ids=[int(category)]))
        else:
            predicates.append(TaxonomyPredicate(["product_cat"], slugs=[category]))
    if filters.category_name:
        predicates.append(TaxonomyPredicate(["product_cat"], slugs=[filters.category_name]))

    if filters.tags:
        predicates.append(TaxonomyPredicate(["product_tag"], slugs=filters.tags))
    if filters.brands:
        predicates.append(TaxonomyPredicate(BRAND_TAXONOMIES, slugs=filters.brands))
    if filters.locations:
        predicates.append(TaxonomyPredicate(["product_location"], slugs=filters.locations))
    for attribute in filters.attributes:
        predicates.append(TaxonomyPredicate([attribute.taxonomy], slugs=attribute.terms))

    if filters.min_price is not None or filters.max_price is not None:
        predicates.append(PriceRangePredicate(filters.min_price, filters.max_price))

    if filters.vendor_id not in (None, ""):
        predicates.append(VendorPredicate(filters.vendor_id))

    return predicates


class ProductQueryBuilder:
    """Runs filtered, ordered, paginated product id queries against the replica."""

    def __init__(self, store: ReplicaStore):
        self.store = store

    def list_products(
        self,
        filters: Optional[ProductFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> ProductPage:
        filters = filters or ProductFilter()
        pagination = pagination or Pagination()
        limit, offset = self._window(pagination)

        predicates = build_predicates(filters)
        count_stmt = select(func.count(distinct(Post.id))).select_from(Post)
        page_stmt = select(Post.id, Post.post_date).select_from(Post).distinct()
        for predicate in predicates:
            count_stmt = predicate.apply(count_stmt)
            page_stmt = predicate.apply(page_stmt)
        page_stmt = (
            page_stmt.order_by(Post.post_date.desc().nulls_last(), Post.id.desc())
            .limit(limit)
            .offset(offset)
        )

        with self.store.session() as session:
            total = session.scalar(count_stmt) or 0
            ids = [row[0] for row in session.execute(page_stmt).all()]

        logger.debug("list_products: %d of %d at offset %d", len(ids), total, offset)
        cursors = [encode_cursor(offset + i) for i in range(len(ids))]
        return ProductPage(
            ids=ids,
            total_count=total,
            offset=offset,
            cursors=cursors,
            page_info=PageInfo(
                has_next_page=offset + len(ids) < total,
                has_previous_page=offset > 0,
                start_cursor=cursors[0] if cursors else None,
                end_cursor=cursors[-1] if cursors else None,
            ),
        )

    @staticmethod
    def _window(pagination: Pagination):
        """(limit, offset) for offset or cursor mode."""
        if pagination.first is not None:
            offset = decode_cursor(pagination.after) + 1 if pagination.after else 0
            return pagination.first, offset
        return pagination.per_page, (pagination.page - 1) * pagination.per_page

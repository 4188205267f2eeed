"""
Catalog replicator: makes the replica match one upstream item snapshot.

``Replicator.sync(item)`` runs five steps, each in its own short session so
each can fail and be retried on its own:

1. upsert the wp_posts row
2. rewrite scalar attributes (wp_postmeta), one row per key
3. reconcile term relationships per taxonomy present in the payload
4. register image attachments that have a usable URL
5. recompute the wp_wc_product_meta_lookup row from the stored attributes

Every write is an overwrite keyed by upstream ids, so re-running a sync (after
a partial failure, or a duplicate webhook delivery) converges to the same rows.
There is no transaction across steps and no lock across items.
"""

import mimetypes
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.database import ReplicaStore
from storefront.logger import get_logger
from storefront.metrics import MetricsCollector
from storefront.models import (
    POST_TYPE_ATTACHMENT,
    POST_TYPE_PRODUCT,
    POST_TYPE_VARIATION,
    Post,
    PostMeta,
    ProductMetaLookup,
    Term,
    TermMeta,
    TermRelationship,
    TermTaxonomy,
)
from storefront.schemas import CatalogItemPayload, ImagePayload, TermRef

logger = get_logger("replicator")

# Payload field -> taxonomy
TAXONOMY_FIELDS = (
    ("categories", "product_cat"),
    ("tags", "product_tag"),
    ("brands", "product_brand"),
    ("locations", "product_location"),
)

# Slugs used by brand plugins; the list query matches any of them
BRAND_TAXONOMIES = ("product_brand", "pwb-brand", "yith_product_brand", "brand", "pa_brand")

# Alternate slugs sent by themes/plugins -> canonical replica taxonomy
TAXONOMY_ALIASES = {
    "pwb-brand": "product_brand",
    "yith_product_brand": "product_brand",
    "brand": "product_brand",
    "location": "product_location",
}

# Keys always written; a missing upstream value becomes the default
NUMERIC_DEFAULT_KEYS = (
    "_price",
    "_regular_price",
    "_stock",
    "total_sales",
    "_wc_average_rating",
    "_wc_rating_count",
)
TEXT_DEFAULT_KEYS = (
    "_sku",
    "_stock_status",
    "_manage_stock",
    "_virtual",
    "_downloadable",
    "_product_type",
    "_tax_status",
    "_tax_class",
)
# Keys written when present in the snapshot and deleted when absent
OPTIONAL_KEYS = (
    "_sale_price",
    "_weight",
    "_length",
    "_width",
    "_height",
    "_thumbnail_id",
    "_product_image_gallery",
    "_upsell_ids",
    "_crosssell_ids",
)
VENDOR_META_KEY = "_wcfm_product_author"
VIEWS_META_KEY = "_wcfm_product_views"
ATTACHED_FILE_META_KEY = "_wp_attached_file"
VARIATION_ATTRIBUTE_PREFIX = "attribute_"

STOCK_STATUSES = ("instock", "outofstock", "onbackorder")
TERM_DESCRIPTION_MAX = 255

MUTABLE_POST_COLUMNS = (
    "post_author",
    "post_content",
    "post_title",
    "post_excerpt",
    "post_status",
    "post_name",
    "post_modified",
    "post_modified_gmt",
    "post_parent",
    "guid",
    "menu_order",
    "post_type",
)


class SyncError(Exception):
    """A replica statement failed during one sync step. Re-running sync is safe."""

    def __init__(self, item_id: int, step: str, cause: Exception):
        super().__init__(f"sync of item {item_id} failed at step '{step}': {cause}")
        self.item_id = item_id
        self.step = step
        self.cause = cause


@dataclass
class SyncResult:
    item_id: int
    skipped: bool = False
    reason: str = ""
    taxonomies: Dict[str, List[int]] = field(default_factory=dict)
    attachments: List[int] = field(default_factory=list)
    skipped_images: List[int] = field(default_factory=list)


#
# Coercion helpers (data-shape errors resolve to defaults, never raise)
#

def canonical_taxonomy(taxonomy: str) -> str:
    return TAXONOMY_ALIASES.get(taxonomy, taxonomy)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _number_or_default(value: Any) -> str:
    number = _coerce_number(value)
    return _format_number(number) if number is not None else "0"


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _yes_no(flag: Any) -> str:
    return "yes" if flag is True or flag == "yes" else "no"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _naive_local(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=None)


def usable_images(item: CatalogItemPayload) -> List[ImagePayload]:
    """Images with an id and a resolvable URL, in payload order."""
    return [img for img in item.images if img.id and img.resolved_url]


def resolve_vendor(item: CatalogItemPayload) -> Optional[str]:
    """_wcfm_product_author from meta_data, falling back to author then post_author."""
    for candidate in (item.meta_value(VENDOR_META_KEY), item.author, item.post_author):
        if candidate not in (None, "", 0, "0"):
            return _text(candidate)
    return None


def variation_attribute_key(attr) -> str:
    slug = attr.slug or (f"pa_{slugify(attr.name)}" if attr.id else slugify(attr.name))
    return f"{VARIATION_ATTRIBUTE_PREFIX}{slug}"


def build_attributes(item: CatalogItemPayload) -> Dict[str, Optional[str]]:
    """
    Scalar attributes for one snapshot.

    A string value is written, ``None`` deletes the key. Keys not in the
    returned mapping are left untouched.
    """
    regular = _coerce_number(item.regular_price)
    sale = _coerce_number(item.sale_price)
    price = _coerce_number(item.price)
    if price is None:
        price = sale if sale is not None else regular

    attrs: Dict[str, Optional[str]] = {
        "_sku": _text(item.sku),
        "_price": _format_number(price) if price is not None else "0",
        "_regular_price": _format_number(regular) if regular is not None else "0",
        "_sale_price": _format_number(sale) if sale is not None else None,
        "_stock": _number_or_default(item.stock_quantity),
        "_stock_status": _text(item.stock_status),
        "_manage_stock": _yes_no(item.manage_stock),
        "_virtual": _yes_no(item.virtual),
        "_downloadable": _yes_no(item.downloadable),
        "_product_type": _text(item.type),
        "_tax_status": _text(item.tax_status),
        "_tax_class": _text(item.tax_class),
        "total_sales": _number_or_default(item.total_sales),
        "_wc_average_rating": _number_or_default(item.average_rating),
        "_wc_rating_count": _number_or_default(item.rating_count),
    }

    weight = _text(item.weight).strip()
    attrs["_weight"] = weight or None
    dims = item.dimensions
    for key, value in (
        ("_length", dims.length if dims else None),
        ("_width", dims.width if dims else None),
        ("_height", dims.height if dims else None),
    ):
        text = _text(value).strip()
        attrs[key] = text or None

    images = usable_images(item)
    attrs["_thumbnail_id"] = str(images[0].id) if images else None
    gallery = [str(img.id) for img in images[1:]]
    attrs["_product_image_gallery"] = ",".join(gallery) if gallery else None

    attrs["_upsell_ids"] = ",".join(str(i) for i in item.upsell_ids) or None
    attrs["_crosssell_ids"] = ",".join(str(i) for i in item.cross_sell_ids) or None

    vendor = resolve_vendor(item)
    if vendor:
        attrs[VENDOR_META_KEY] = vendor
    if item.meta_data is not None:
        views = item.meta_value(VIEWS_META_KEY)
        attrs[VIEWS_META_KEY] = _text(views) if views not in (None, "") else "0"

    if item.is_variation:
        for attr in item.attributes:
            if attr.option is not None:
                attrs[variation_attribute_key(attr)] = attr.option

    return attrs


def derive_lookup(product_id: int, meta: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """
    Lookup row computed only from stored attribute values.

    Never reads upstream fields, so the row cannot drift from the attributes
    it summarizes.
    """
    price = _coerce_number(meta.get("_price")) or 0.0
    regular = _coerce_number(meta.get("_regular_price"))
    sale = _coerce_number(meta.get("_sale_price"))
    stock_status = meta.get("_stock_status") or ""
    return {
        "product_id": product_id,
        "sku": meta.get("_sku") or "",
        "virtual": meta.get("_virtual") == "yes",
        "downloadable": meta.get("_downloadable") == "yes",
        "min_price": price,
        "max_price": price,
        "onsale": sale is not None and regular is not None and sale < regular,
        "stock_quantity": _coerce_number(meta.get("_stock")) or 0.0,
        "stock_status": stock_status if stock_status in STOCK_STATUSES else "outofstock",
        "rating_count": int(_coerce_number(meta.get("_wc_rating_count")) or 0),
        "average_rating": _coerce_number(meta.get("_wc_average_rating")) or 0.0,
        "total_sales": int(_coerce_number(meta.get("total_sales")) or 0),
        "tax_status": meta.get("_tax_status") or "taxable",
        "tax_class": meta.get("_tax_class") or "",
    }


class Replicator:
    """
    Idempotent sync engine over an injected ReplicaStore.

    Args:
        store: open replica store
        reject_stale: skip snapshots whose date_modified_gmt is older than the
            stored row's
        metrics: optional collector for sync outcomes
    """

    def __init__(
        self,
        store: ReplicaStore,
        reject_stale: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.reject_stale = reject_stale
        self.metrics = metrics

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sync(self, item: Union[CatalogItemPayload, Dict[str, Any]]) -> SyncResult:
        """Bring the replica into agreement with one upstream snapshot."""
        if not isinstance(item, CatalogItemPayload):
            item = CatalogItemPayload.model_validate(item)
        started = time.perf_counter()
        logger.info("Syncing item %s", item.id)

        try:
            result = self._sync(item)
        except SyncError:
            self._record("failed")
            raise

        if self.metrics is not None:
            self.metrics.record_latency("sync", (time.perf_counter() - started) * 1000)
        self._record("skipped_stale" if result.skipped else "synced")
        return result

    def delete(self, item_id: int) -> None:
        """Remove an item's row, attributes, relationships and lookup row."""
        logger.info("Deleting item %s", item_id)
        self._run_step(item_id, "delete_post", self._delete_post, item_id)
        self._run_step(item_id, "delete_attributes", self._delete_attributes, item_id)
        self._run_step(item_id, "delete_relationships", self._delete_relationships, item_id)
        self._run_step(item_id, "delete_lookup", self._delete_lookup, item_id)
        self._record("deleted")

    def sync_term(self, term: Union[TermRef, Dict[str, Any]], taxonomy: str) -> Optional[int]:
        """
        Upsert one taxonomy term (name, slug, description, parent, count, image).

        Returns the term_taxonomy_id, or None when the payload has no term id.
        """
        if not isinstance(term, TermRef):
            term = TermRef.model_validate(term)
        taxonomy = canonical_taxonomy(taxonomy)
        if not term.id:
            logger.warning("sync_term: missing term id for %s payload %s", taxonomy, term.model_dump())
            return None

        logger.info("Syncing term %s %s", taxonomy, term.id)
        return self._run_step(term.id, "sync_term", self._sync_term, term, taxonomy)

    def delete_term(self, term_id: int, taxonomy: str) -> None:
        if not term_id:
            return
        taxonomy = canonical_taxonomy(taxonomy)
        logger.info("Deleting term %s %s", taxonomy, term_id)
        self._run_step(term_id, "delete_term", self._delete_term, term_id, taxonomy)

    # ------------------------------------------------------------------
    # Sync steps
    # ------------------------------------------------------------------

    def _sync(self, item: CatalogItemPayload) -> SyncResult:
        result = SyncResult(item_id=item.id)

        if self.reject_stale:
            stored = self._run_step(item.id, "check_freshness", self._stored_modified_gmt, item.id)
            incoming = _naive_utc(item.date_modified_gmt)
            if stored is not None and incoming is not None and incoming < stored:
                logger.warning(
                    "Skipping stale snapshot of item %s (incoming %s < stored %s)",
                    item.id, incoming.isoformat(), stored.isoformat(),
                )
                result.skipped = True
                result.reason = "stale"
                return result

        self._run_step(item.id, "upsert_post", self._upsert_post, item)
        self._run_step(item.id, "rewrite_attributes", self._rewrite_attributes, item.id, build_attributes(item),
                       item.is_variation)

        for field_name, taxonomy in TAXONOMY_FIELDS:
            terms = getattr(item, field_name)
            if terms is None:
                continue
            result.taxonomies[taxonomy] = self._run_step(
                item.id, f"reconcile_{taxonomy}", self._reconcile_terms, item.id, terms, taxonomy
            )

        written, skipped = self._run_step(item.id, "sync_attachments", self._sync_attachments, item)
        result.attachments = written
        result.skipped_images = skipped

        self._run_step(item.id, "update_lookup", self._update_lookup, item.id)
        logger.info("Item %s synced", item.id)
        return result

    def _stored_modified_gmt(self, session: Session, item_id: int) -> Optional[datetime]:
        return session.scalar(select(Post.post_modified_gmt).where(Post.id == item_id))

    def _upsert_post(self, session: Session, item: CatalogItemPayload) -> None:
        table = Post.__table__
        values = {
            "ID": item.id,
            "post_author": int(_coerce_number(resolve_vendor(item)) or 0),
            "post_date": _naive_local(item.date_created),
            "post_date_gmt": _naive_utc(item.date_created_gmt),
            "post_content": item.description,
            "post_title": item.name,
            "post_excerpt": item.short_description,
            "post_status": item.status or "publish",
            "comment_status": "open",
            "ping_status": "closed",
            "post_name": item.slug,
            "post_modified": _naive_local(item.date_modified),
            "post_modified_gmt": _naive_utc(item.date_modified_gmt),
            "post_parent": item.parent_id or 0,
            "guid": item.permalink,
            "menu_order": item.menu_order,
            "post_type": POST_TYPE_VARIATION if item.is_variation else POST_TYPE_PRODUCT,
            "post_mime_type": "",
        }
        stmt = self.store.insert(table).values(**values)
        set_ = {name: stmt.excluded[name] for name in MUTABLE_POST_COLUMNS}
        # Keep the first known creation date when a later snapshot omits it
        set_["post_date"] = func.coalesce(stmt.excluded.post_date, table.c.post_date)
        set_["post_date_gmt"] = func.coalesce(stmt.excluded.post_date_gmt, table.c.post_date_gmt)
        session.execute(stmt.on_conflict_do_update(index_elements=[table.c.ID], set_=set_))

    def _rewrite_attributes(
        self,
        session: Session,
        item_id: int,
        attrs: Dict[str, Optional[str]],
        is_variation: bool = False,
    ) -> None:
        to_write = {k: v for k, v in attrs.items() if v is not None}
        to_delete = [k for k, v in attrs.items() if v is None]

        if is_variation:
            stale = session.scalars(
                select(PostMeta.meta_key).where(
                    PostMeta.post_id == item_id,
                    PostMeta.meta_key.like(f"{VARIATION_ATTRIBUTE_PREFIX}%"),
                )
            ).all()
            to_delete.extend(k for k in stale if k not in to_write)

        if to_delete:
            session.execute(
                delete(PostMeta).where(PostMeta.post_id == item_id, PostMeta.meta_key.in_(to_delete))
            )
        for key, value in to_write.items():
            self._upsert_meta(session, item_id, key, value)

    def _upsert_meta(self, session: Session, post_id: int, key: str, value: str) -> None:
        table = PostMeta.__table__
        stmt = self.store.insert(table).values(post_id=post_id, meta_key=key, meta_value=value)
        session.execute(
            stmt.on_conflict_do_update(
                index_elements=[table.c.post_id, table.c.meta_key],
                set_={"meta_value": stmt.excluded.meta_value},
            )
        )

    def _reconcile_terms(
        self,
        session: Session,
        item_id: int,
        terms: Iterable[TermRef],
        taxonomy: str,
    ) -> List[int]:
        """
        Make the item's links in ``taxonomy`` equal the supplied terms.

        The current links are read inside this step, never from an earlier
        snapshot, so racing syncs of the same item still converge.
        """
        desired: List[int] = []
        for term in terms:
            if not term.id:
                logger.warning("Item %s: %s term without id skipped (%s)", item_id, taxonomy, term.slug)
                continue
            tt_id = self._ensure_term_taxonomy(session, term, taxonomy)
            if tt_id is not None and tt_id not in desired:
                desired.append(tt_id)

        current: Set[int] = set(
            session.scalars(
                select(TermRelationship.term_taxonomy_id)
                .join(TermTaxonomy, TermRelationship.term_taxonomy_id == TermTaxonomy.term_taxonomy_id)
                .where(TermRelationship.object_id == item_id, TermTaxonomy.taxonomy == taxonomy)
            ).all()
        )
        wanted = set(desired)
        removed = current - wanted
        added = [tt_id for tt_id in desired if tt_id not in current]

        if removed:
            session.execute(
                delete(TermRelationship).where(
                    TermRelationship.object_id == item_id,
                    TermRelationship.term_taxonomy_id.in_(removed),
                )
            )
        table = TermRelationship.__table__
        for order, tt_id in enumerate(desired):
            if tt_id not in added:
                continue
            stmt = self.store.insert(table).values(object_id=item_id, term_taxonomy_id=tt_id, term_order=order)
            session.execute(stmt.on_conflict_do_nothing(index_elements=[table.c.object_id, table.c.term_taxonomy_id]))

        if removed or added:
            logger.debug("Item %s %s: +%s -%s", item_id, taxonomy, added, sorted(removed))
            self._refresh_counts(session, removed | set(added))
        return sorted(wanted)

    def _ensure_term_taxonomy(self, session: Session, term: TermRef, taxonomy: str) -> Optional[int]:
        """
        term_taxonomy_id for (term, taxonomy), creating the term and taxonomy rows if unseen.

        Product payloads only carry term ids. The upstream term_taxonomy_id is
        used when the payload has it; otherwise it is assumed equal to the
        term id (true for WooCommerce categories in practice), falling back to
        the next id past the current maximum when that id already belongs
        to another row.
        """
        terms_table = Term.__table__
        stmt = self.store.insert(terms_table).values(term_id=term.id, name=term.name, slug=term.slug)
        session.execute(stmt.on_conflict_do_nothing(index_elements=[terms_table.c.term_id]))

        existing = self._find_term_taxonomy(session, term.id, taxonomy)
        if existing is not None:
            return existing

        tt_table = TermTaxonomy.__table__
        values = {
            "term_id": term.id,
            "taxonomy": taxonomy,
            "description": term.description[:TERM_DESCRIPTION_MAX],
            "parent": term.parent,
            "count": 0,
        }
        preferred = term.term_taxonomy_id or term.id
        session.execute(
            self.store.insert(tt_table).values(term_taxonomy_id=preferred, **values).on_conflict_do_nothing()
        )
        existing = self._find_term_taxonomy(session, term.id, taxonomy)
        if existing is not None:
            return existing

        # Explicit ids never advance a sequence, so allocate past the current maximum.
        # A concurrent insert of the same id raises and the step is retried.
        next_id = (session.scalar(select(func.max(TermTaxonomy.term_taxonomy_id))) or 0) + 1
        logger.warning(
            "term_taxonomy_id %s already taken; using %s for term %s in %s",
            preferred, next_id, term.id, taxonomy,
        )
        session.execute(self.store.insert(tt_table).values(term_taxonomy_id=next_id, **values))
        return next_id

    @staticmethod
    def _find_term_taxonomy(session: Session, term_id: int, taxonomy: str) -> Optional[int]:
        return session.scalar(
            select(TermTaxonomy.term_taxonomy_id).where(
                TermTaxonomy.term_id == term_id, TermTaxonomy.taxonomy == taxonomy
            )
        )

    @staticmethod
    def _refresh_counts(session: Session, tt_ids: Iterable[int]) -> None:
        tt_ids = list(tt_ids)
        if not tt_ids:
            return
        member_count = (
            select(func.count())
            .select_from(TermRelationship)
            .where(TermRelationship.term_taxonomy_id == TermTaxonomy.term_taxonomy_id)
            .correlate(TermTaxonomy)
            .scalar_subquery()
        )
        session.execute(
            update(TermTaxonomy)
            .where(TermTaxonomy.term_taxonomy_id.in_(tt_ids))
            .values(count=member_count)
            .execution_options(synchronize_session=False)
        )

    def _sync_attachments(self, session: Session, item: CatalogItemPayload):
        written: List[int] = []
        skipped: List[int] = []
        table = Post.__table__
        for image in item.images:
            if not image.id:
                continue
            url = image.resolved_url
            if not url:
                logger.warning("Image %s of item %s has no src/source_url/url; not registered", image.id, item.id)
                skipped.append(image.id)
                continue

            mime_type = mimetypes.guess_type(url)[0] or "image/jpeg"
            values = {
                "ID": image.id,
                "post_author": 0,
                "post_date": _naive_local(image.date_created),
                "post_date_gmt": _naive_utc(image.date_created_gmt),
                "post_content": "",
                "post_title": image.name,
                "post_excerpt": image.alt,
                "post_status": "inherit",
                "comment_status": "open",
                "ping_status": "closed",
                "post_name": slugify(image.name),
                "post_modified": _naive_local(image.date_modified),
                "post_modified_gmt": _naive_utc(image.date_modified_gmt),
                "post_parent": item.id,
                "guid": url,
                "menu_order": 0,
                "post_type": POST_TYPE_ATTACHMENT,
                "post_mime_type": mime_type,
            }
            stmt = self.store.insert(table).values(**values)
            session.execute(
                stmt.on_conflict_do_update(
                    index_elements=[table.c.ID],
                    set_={
                        name: stmt.excluded[name]
                        for name in ("guid", "post_title", "post_excerpt", "post_modified",
                                     "post_modified_gmt", "post_mime_type")
                    },
                )
            )
            self._upsert_meta(session, image.id, ATTACHED_FILE_META_KEY, url)
            written.append(image.id)
        return written, skipped

    def _update_lookup(self, session: Session, item_id: int) -> None:
        meta = dict(
            session.execute(
                select(PostMeta.meta_key, PostMeta.meta_value).where(PostMeta.post_id == item_id)
            ).all()
        )
        row = derive_lookup(item_id, meta)
        table = ProductMetaLookup.__table__
        stmt = self.store.insert(table).values(**row)
        session.execute(
            stmt.on_conflict_do_update(
                index_elements=[table.c.product_id],
                set_={name: stmt.excluded[name] for name in row if name != "product_id"},
            )
        )

    # ------------------------------------------------------------------
    # Delete steps
    # ------------------------------------------------------------------

    @staticmethod
    def _delete_post(session: Session, item_id: int) -> None:
        session.execute(delete(Post).where(Post.id == item_id))

    @staticmethod
    def _delete_attributes(session: Session, item_id: int) -> None:
        session.execute(delete(PostMeta).where(PostMeta.post_id == item_id))

    def _delete_relationships(self, session: Session, item_id: int) -> None:
        tt_ids = session.scalars(
            select(TermRelationship.term_taxonomy_id).where(TermRelationship.object_id == item_id)
        ).all()
        session.execute(delete(TermRelationship).where(TermRelationship.object_id == item_id))
        self._refresh_counts(session, tt_ids)

    @staticmethod
    def _delete_lookup(session: Session, item_id: int) -> None:
        session.execute(delete(ProductMetaLookup).where(ProductMetaLookup.product_id == item_id))

    # ------------------------------------------------------------------
    # Term steps
    # ------------------------------------------------------------------

    def _sync_term(self, session: Session, term: TermRef, taxonomy: str) -> Optional[int]:
        terms_table = Term.__table__
        stmt = self.store.insert(terms_table).values(term_id=term.id, name=term.name, slug=term.slug)
        session.execute(
            stmt.on_conflict_do_update(
                index_elements=[terms_table.c.term_id],
                set_={"name": stmt.excluded.name, "slug": stmt.excluded.slug},
            )
        )

        tt_id = self._ensure_term_taxonomy(session, term, taxonomy)
        if tt_id is not None:
            session.execute(
                update(TermTaxonomy)
                .where(TermTaxonomy.term_taxonomy_id == tt_id)
                .values(
                    description=term.description[:TERM_DESCRIPTION_MAX],
                    parent=term.parent,
                    count=term.count,
                )
                .execution_options(synchronize_session=False)
            )

        image_id = (term.image or {}).get("id")
        if image_id:
            meta_table = TermMeta.__table__
            meta_stmt = self.store.insert(meta_table).values(
                term_id=term.id, meta_key="thumbnail_id", meta_value=str(image_id)
            )
            session.execute(
                meta_stmt.on_conflict_do_update(
                    index_elements=[meta_table.c.term_id, meta_table.c.meta_key],
                    set_={"meta_value": meta_stmt.excluded.meta_value},
                )
            )
        return tt_id

    def _delete_term(self, session: Session, term_id: int, taxonomy: str) -> None:
        tt_ids = session.scalars(
            select(TermTaxonomy.term_taxonomy_id).where(
                TermTaxonomy.term_id == term_id, TermTaxonomy.taxonomy == taxonomy
            )
        ).all()
        if tt_ids:
            session.execute(delete(TermRelationship).where(TermRelationship.term_taxonomy_id.in_(tt_ids)))
            session.execute(delete(TermTaxonomy).where(TermTaxonomy.term_taxonomy_id.in_(tt_ids)))

        # A term id can sit in more than one taxonomy; keep the term while any remain
        remaining = session.scalar(
            select(func.count()).select_from(TermTaxonomy).where(TermTaxonomy.term_id == term_id)
        )
        if not remaining:
            session.execute(delete(TermMeta).where(TermMeta.term_id == term_id))
            session.execute(delete(Term).where(Term.term_id == term_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run_step(self, item_id: int, step: str, fn: Callable, *args):
        try:
            with self.store.session() as session:
                return fn(session, *args)
        except SQLAlchemyError as exc:
            logger.error("Item %s: step %s failed: %s", item_id, step, exc)
            raise SyncError(item_id, step, exc) from exc

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_sync(outcome)

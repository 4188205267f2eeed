"""
Tests for the replicator: idempotent sync, taxonomy reconciliation, lookup
consistency, attachments, stale snapshot rejection, deletes and term sync.

Runs against an in-memory SQLite replica.
"""

import pytest
from pydantic import ValidationError
from sqlalchemy import Text, select, text

from conftest import dump_tables, linked_terms, make_item, make_term, meta_for, term_count
from storefront.models import Post, PostMeta, ProductMetaLookup, Term, TermMeta, TermTaxonomy
from storefront.replicator import (
    Replicator,
    SyncError,
    build_attributes,
    derive_lookup,
)
from storefront.schemas import CatalogItemPayload


def _post(store, post_id):
    with store.session() as session:
        row = session.get(Post, post_id)
        if row is not None:
            session.expunge(row)
        return row


def _lookup(store, product_id):
    with store.session() as session:
        row = session.get(ProductMetaLookup, product_id)
        if row is not None:
            session.expunge(row)
        return row


# ── Pure attribute / lookup derivation ───────────────────────────────────

class TestBuildAttributes:
    def test_missing_numbers_default_to_zero(self):
        item = CatalogItemPayload.model_validate({"id": 1, "price": None, "regular_price": "", "stock_quantity": None})
        attrs = build_attributes(item)
        assert attrs["_price"] == "0"
        assert attrs["_regular_price"] == "0"
        assert attrs["_stock"] == "0"
        assert attrs["total_sales"] == "0"

    def test_missing_text_defaults_to_empty(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1}))
        assert attrs["_sku"] == ""
        assert attrs["_stock_status"] == ""
        assert attrs["_tax_class"] == ""

    def test_optional_keys_absent_are_marked_for_delete(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1, "sale_price": ""}))
        assert attrs["_sale_price"] is None
        assert attrs["_weight"] is None
        assert attrs["_thumbnail_id"] is None
        assert attrs["_product_image_gallery"] is None

    def test_price_falls_back_to_sale_then_regular(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1, "regular_price": "30"}))
        assert attrs["_price"] == "30"
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1, "regular_price": "30", "sale_price": "25"}))
        assert attrs["_price"] == "25"

    def test_numbers_keep_decimals(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1, "price": "19.99", "regular_price": 20}))
        assert attrs["_price"] == "19.99"
        assert attrs["_regular_price"] == "20"

    def test_flags_become_yes_no(self):
        attrs = build_attributes(CatalogItemPayload.model_validate(
            {"id": 1, "manage_stock": True, "virtual": False, "downloadable": True}
        ))
        assert attrs["_manage_stock"] == "yes"
        assert attrs["_virtual"] == "no"
        assert attrs["_downloadable"] == "yes"

    def test_thumbnail_and_gallery_skip_images_without_url(self):
        item = CatalogItemPayload.model_validate({
            "id": 1,
            "images": [
                {"id": 11, "src": ""},
                {"id": 12, "source_url": "https://cdn.test/12.jpg"},
                {"id": 13, "url": "https://cdn.test/13.jpg"},
                {"id": 14, "src": "https://cdn.test/14.jpg"},
            ],
        })
        attrs = build_attributes(item)
        assert attrs["_thumbnail_id"] == "12"
        assert attrs["_product_image_gallery"] == "13,14"

    def test_vendor_from_meta_data_then_author(self):
        item = CatalogItemPayload.model_validate({
            "id": 1, "author": 7, "meta_data": [{"key": "_wcfm_product_author", "value": "42"}],
        })
        assert build_attributes(item)["_wcfm_product_author"] == "42"

        item = CatalogItemPayload.model_validate({"id": 1, "author": 7})
        assert build_attributes(item)["_wcfm_product_author"] == "7"

        item = CatalogItemPayload.model_validate({"id": 1, "post_author": "9"})
        assert build_attributes(item)["_wcfm_product_author"] == "9"

    def test_vendor_untouched_when_unknown(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1}))
        assert "_wcfm_product_author" not in attrs
        assert "_wcfm_product_views" not in attrs

    def test_views_default_when_meta_data_present(self):
        attrs = build_attributes(CatalogItemPayload.model_validate({"id": 1, "meta_data": []}))
        assert attrs["_wcfm_product_views"] == "0"

    def test_variation_attributes(self):
        item = CatalogItemPayload.model_validate({
            "id": 2,
            "parent_id": 1,
            "attributes": [
                {"id": 3, "name": "Color", "option": "Red"},
                {"id": 0, "name": "Fit Type", "option": "Slim"},
                {"id": 4, "name": "Size", "slug": "pa_size", "option": "M"},
            ],
        })
        attrs = build_attributes(item)
        assert attrs["attribute_pa_color"] == "Red"
        assert attrs["attribute_fit-type"] == "Slim"
        assert attrs["attribute_pa_size"] == "M"


class TestDeriveLookup:
    def test_min_max_equal_item_price(self):
        row = derive_lookup(5, {"_price": "19.99", "_regular_price": "24.99", "_sale_price": "19.99"})
        assert row["min_price"] == row["max_price"] == 19.99
        assert row["onsale"] is True

    def test_not_on_sale_without_sale_price(self):
        row = derive_lookup(5, {"_price": "24.99", "_regular_price": "24.99"})
        assert row["onsale"] is False

    def test_unknown_stock_status_is_out_of_stock(self):
        assert derive_lookup(5, {"_stock_status": ""})["stock_status"] == "outofstock"
        assert derive_lookup(5, {"_stock_status": "onbackorder"})["stock_status"] == "onbackorder"

    def test_defaults(self):
        row = derive_lookup(5, {})
        assert row["min_price"] == 0.0
        assert row["rating_count"] == 0
        assert row["tax_status"] == "taxable"
        assert row["virtual"] is False


# ── Sync ─────────────────────────────────────────────────────────────────

class TestSync:
    def test_creates_rows(self, store, replicator):
        result = replicator.sync(make_item(100))

        post = _post(store, 100)
        assert post.post_title == "Product 100"
        assert post.post_type == "product"
        assert post.post_name == "product-100"
        assert post.post_excerpt == "Short 100"

        meta = meta_for(store, 100)
        assert meta["_sku"] == "SKU-100"
        assert meta["_price"] == "19.99"
        assert meta["_thumbnail_id"] == "9100"
        assert result.taxonomies["product_cat"] == [10]
        assert result.attachments == [9100]

    def test_idempotent(self, store, replicator):
        item = make_item(100, tags=[make_term(20, "summer")], brands=[make_term(30, "nike")])
        replicator.sync(item)
        first = dump_tables(store)
        replicator.sync(item)
        assert dump_tables(store) == first

    def test_overwrite_updates_fields(self, store, replicator):
        replicator.sync(make_item(100))
        replicator.sync(make_item(100, name="Renamed", price="9.50", modified="2024-01-03T10:00:00"))

        assert _post(store, 100).post_title == "Renamed"
        assert meta_for(store, 100)["_price"] == "9.5"
        assert _lookup(store, 100).min_price == 9.5

    def test_optional_attribute_removed_when_absent(self, store, replicator):
        replicator.sync(make_item(100, weight="1.5"))
        assert meta_for(store, 100)["_weight"] == "1.5"

        replicator.sync(make_item(100, sale_price=""))
        meta = meta_for(store, 100)
        assert "_weight" not in meta
        assert "_sale_price" not in meta

    def test_one_value_per_key(self, store, replicator):
        for _ in range(3):
            replicator.sync(make_item(100))
        with store.session() as session:
            rows = session.scalars(
                select(PostMeta.meta_key).where(PostMeta.post_id == 100, PostMeta.meta_key == "_price")
            ).all()
        assert rows == ["_price"]

    def test_variation_post_type(self, store, replicator):
        replicator.sync(make_item(101, type="variation", parent_id=100,
                                  attributes=[{"id": 1, "name": "Color", "option": "Blue"}]))
        post = _post(store, 101)
        assert post.post_type == "product_variation"
        assert post.post_parent == 100
        assert meta_for(store, 101)["attribute_pa_color"] == "Blue"

    def test_variation_attribute_dropped_when_removed(self, store, replicator):
        replicator.sync(make_item(101, type="variation", parent_id=100,
                                  attributes=[{"id": 1, "name": "Color", "option": "Blue"},
                                              {"id": 2, "name": "Size", "option": "L"}]))
        replicator.sync(make_item(101, type="variation", parent_id=100,
                                  attributes=[{"id": 1, "name": "Color", "option": "Blue"}]))
        meta = meta_for(store, 101)
        assert "attribute_pa_size" not in meta
        assert meta["attribute_pa_color"] == "Blue"

    def test_accepts_payload_model(self, store, replicator):
        replicator.sync(CatalogItemPayload.model_validate(make_item(100)))
        assert _post(store, 100) is not None

    def test_records_metrics(self, replicator, metrics):
        replicator.sync(make_item(100))
        assert metrics.sync_counts["synced"] == 1
        assert len(metrics.latencies["sync"]) == 1


class TestMalformedFields:
    @pytest.mark.parametrize("override", [
        {"virtual": None},
        {"downloadable": "maybe"},
        {"status": None},
        {"type": None},
        {"stock_status": 5},
        {"tax_status": ["taxable"]},
        {"upsell_ids": None},
        {"cross_sell_ids": ["x", 7]},
        {"images": None},
        {"attributes": "Color"},
        {"meta_data": [{"value": "x"}]},
        {"meta_data": [{"key": 12, "value": "x"}, "junk"]},
        {"images": [{"id": "abc", "src": "https://cdn.shop.test/x.jpg"}]},
        {"date_created": "not a date"},
        {"parent_id": "none"},
        {"price": {"amount": 5}},
        {"dimensions": "10x10x10"},
        {"categories": "shoes"},
    ])
    def test_sync_applies_defaults(self, store, replicator, override):
        result = replicator.sync(make_item(1, **override))

        assert not result.skipped
        assert _post(store, 1) is not None
        assert meta_for(store, 1)["_sku"] == "SKU-1"

    def test_null_fields_fall_back(self, store, replicator):
        replicator.sync(make_item(1, virtual=None, status=None, type=None, upsell_ids=None))

        meta = meta_for(store, 1)
        assert meta["_virtual"] == "no"
        assert meta["_product_type"] == "simple"
        assert "_upsell_ids" not in meta
        assert _post(store, 1).post_status == "publish"

    def test_image_with_bad_id_skipped(self, store, replicator):
        result = replicator.sync(make_item(1, images=[
            {"id": "abc", "src": "https://cdn.shop.test/x.jpg"},
            {"id": 9202, "src": "https://cdn.shop.test/ok.jpg"},
        ]))
        assert result.attachments == [9202]

    def test_non_list_taxonomy_treated_as_absent(self, store, replicator):
        replicator.sync(make_item(1, categories=[make_term(10)]))
        replicator.sync(make_item(1, categories="shoes"))
        assert linked_terms(store, 1, "product_cat") == [10]

    def test_missing_id_still_rejected(self, replicator):
        item = make_item(1)
        del item["id"]
        with pytest.raises(ValidationError):
            replicator.sync(item)


class TestTaxonomyReconciliation:
    def test_zero_to_many(self, store, replicator):
        replicator.sync(make_item(100, categories=[]))
        assert linked_terms(store, 100, "product_cat") == []

        replicator.sync(make_item(100, categories=[make_term(10), make_term(11), make_term(12)]))
        assert linked_terms(store, 100, "product_cat") == [10, 11, 12]

    def test_many_to_zero(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10), make_term(11)]))
        replicator.sync(make_item(100, categories=[]))
        assert linked_terms(store, 100, "product_cat") == []

    def test_many_to_other_many(self, store, replicator):
        replicator.sync(make_item(500, categories=[make_term(10), make_term(11)]))
        result = replicator.sync(make_item(500, categories=[make_term(11), make_term(12)]))

        assert linked_terms(store, 500, "product_cat") == [11, 12]
        assert result.taxonomies["product_cat"] == [11, 12]

    def test_absent_field_leaves_taxonomy_untouched(self, store, replicator):
        replicator.sync(make_item(100, tags=[make_term(20, "summer")]))
        item = make_item(100)
        del item["tags"]
        replicator.sync(item)
        assert linked_terms(store, 100, "product_tag") == [20]

    def test_taxonomies_are_independent(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10)], brands=[make_term(30, "nike")],
                                  locations=[make_term(40, "accra")]))
        replicator.sync(make_item(100, categories=[make_term(11)]))

        assert linked_terms(store, 100, "product_cat") == [11]
        assert linked_terms(store, 100, "product_brand") == [30]
        assert linked_terms(store, 100, "product_location") == [40]

    def test_duplicate_terms_linked_once(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10), make_term(10)]))
        assert linked_terms(store, 100, "product_cat") == [10]

    def test_term_without_id_skipped(self, store, replicator):
        replicator.sync(make_item(100, categories=[{"name": "Orphan", "slug": "orphan"}, make_term(10)]))
        assert linked_terms(store, 100, "product_cat") == [10]

    def test_counts_follow_membership(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10), make_term(11)]))
        replicator.sync(make_item(101, categories=[make_term(10)]))
        assert term_count(store, 10, "product_cat") == 2
        assert term_count(store, 11, "product_cat") == 1

        replicator.sync(make_item(100, categories=[make_term(11)]))
        assert term_count(store, 10, "product_cat") == 1
        assert term_count(store, 11, "product_cat") == 1

    def test_term_rows_created_on_demand(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(15, "boots", "Boots")]))
        with store.session() as session:
            term = session.get(Term, 15)
            assert term.slug == "boots"
            tt = session.scalars(select(TermTaxonomy).where(TermTaxonomy.term_id == 15)).one()
            assert tt.taxonomy == "product_cat"
            assert tt.term_taxonomy_id == 15

    def test_payload_term_taxonomy_id_is_used(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(15, term_taxonomy_id=77)]))
        with store.session() as session:
            tt_id = session.scalar(select(TermTaxonomy.term_taxonomy_id).where(TermTaxonomy.term_id == 15))
        assert tt_id == 77


class TestLookup:
    def test_lookup_matches_attributes(self, store, replicator):
        replicator.sync(make_item(100, price="12.00", regular_price="15.00", sale_price="12.00",
                                  stock_quantity=7, stock_status="onbackorder", virtual=True))
        row = _lookup(store, 100)
        meta = meta_for(store, 100)

        assert row.min_price == row.max_price == float(meta["_price"]) == 12.0
        assert row.onsale is True
        assert row.stock_quantity == 7.0
        assert row.stock_status == "onbackorder"
        assert row.virtual is True
        assert row.sku == meta["_sku"]

    def test_lookup_follows_resync(self, store, replicator):
        replicator.sync(make_item(100, price="12.00"))
        replicator.sync(make_item(100, price="30.00", sale_price="", regular_price="30.00"))
        row = _lookup(store, 100)
        assert row.min_price == 30.0
        assert row.onsale is False


class TestAttachments:
    def test_attachment_row_written(self, store, replicator):
        replicator.sync(make_item(100))
        attachment = _post(store, 9100)
        assert attachment.post_type == "attachment"
        assert attachment.guid == "https://cdn.shop.test/100-a.jpg"
        assert attachment.post_parent == 100
        assert attachment.post_mime_type == "image/jpeg"
        assert meta_for(store, 9100)["_wp_attached_file"] == "https://cdn.shop.test/100-a.jpg"

    def test_image_without_url_skipped(self, store, replicator):
        result = replicator.sync(make_item(100, images=[
            {"id": 9201, "src": None, "name": "broken"},
            {"id": 9202, "url": "https://cdn.shop.test/ok.png"},
        ]))

        assert result.skipped_images == [9201]
        assert result.attachments == [9202]
        assert _post(store, 9201) is None
        assert _post(store, 9202).post_mime_type == "image/png"
        assert meta_for(store, 100)["_thumbnail_id"] == "9202"

    def test_long_signed_url_kept_whole(self, store, replicator):
        url = "https://cdn.shop.test/img/100-a.jpg?" + "&".join(f"sig{i}=" + "x" * 40 for i in range(10))
        assert len(url) > 255
        assert isinstance(Post.__table__.c.guid.type, Text)

        replicator.sync(make_item(100, images=[{"id": 9100, "src": url}]))

        assert _post(store, 9100).guid == url

    def test_image_without_id_ignored(self, store, replicator):
        result = replicator.sync(make_item(100, images=[{"src": "https://cdn.shop.test/x.jpg"}]))
        assert result.attachments == []
        assert result.skipped_images == []

    def test_variation_single_image(self, store, replicator):
        item = make_item(101, type="variation", parent_id=100,
                         image={"id": 9301, "src": "https://cdn.shop.test/v.jpg"})
        del item["images"]
        replicator.sync(item)
        assert _post(store, 9301).guid == "https://cdn.shop.test/v.jpg"


class TestStaleSnapshots:
    def test_older_snapshot_skipped(self, store, replicator, metrics):
        replicator.sync(make_item(100, name="New", modified="2024-02-01T00:00:00"))
        result = replicator.sync(make_item(100, name="Old", modified="2024-01-01T00:00:00"))

        assert result.skipped is True
        assert result.reason == "stale"
        assert _post(store, 100).post_title == "New"
        assert metrics.sync_counts["skipped_stale"] == 1

    def test_equal_timestamp_reapplied(self, store, replicator):
        replicator.sync(make_item(100, name="First", modified="2024-02-01T00:00:00"))
        result = replicator.sync(make_item(100, name="Again", modified="2024-02-01T00:00:00"))
        assert result.skipped is False
        assert _post(store, 100).post_title == "Again"

    def test_missing_timestamp_applied(self, store, replicator):
        replicator.sync(make_item(100, modified="2024-02-01T00:00:00"))
        replicator.sync(make_item(100, name="No date", date_modified_gmt=None))
        assert _post(store, 100).post_title == "No date"

    def test_timezone_aware_timestamps_compared_in_utc(self, store, replicator):
        replicator.sync(make_item(100, name="New", modified="2024-02-01T12:00:00"))
        result = replicator.sync(make_item(100, name="Old", date_modified_gmt="2024-02-01T13:00:00+02:00"))
        assert result.skipped is True

    def test_disabled(self, store):
        replicator = Replicator(store, reject_stale=False)
        replicator.sync(make_item(100, name="New", modified="2024-02-01T00:00:00"))
        replicator.sync(make_item(100, name="Old", modified="2024-01-01T00:00:00"))
        assert _post(store, 100).post_title == "Old"


class TestDelete:
    def test_removes_item_rows(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10)]))
        replicator.sync(make_item(101, categories=[make_term(10)]))
        replicator.delete(100)

        assert _post(store, 100) is None
        assert meta_for(store, 100) == {}
        assert _lookup(store, 100) is None
        assert linked_terms(store, 100, "product_cat") == []
        assert term_count(store, 10, "product_cat") == 1

    def test_attachments_kept(self, store, replicator):
        replicator.sync(make_item(100))
        replicator.delete(100)
        assert _post(store, 9100) is not None

    def test_delete_unknown_is_noop(self, store, replicator):
        replicator.delete(12345)
        assert _post(store, 12345) is None

    def test_resync_after_delete(self, store, replicator):
        replicator.sync(make_item(100))
        replicator.delete(100)
        replicator.sync(make_item(100))
        assert _post(store, 100) is not None
        assert linked_terms(store, 100, "product_cat") == [10]


class TestTermSync:
    def test_sync_term(self, store, replicator):
        tt_id = replicator.sync_term(
            {"id": 50, "name": "Sneakers", "slug": "sneakers", "parent": 10, "count": 4,
             "description": "x" * 300, "image": {"id": 777}},
            "product_cat",
        )
        assert tt_id == 50
        with store.session() as session:
            tt = session.get(TermTaxonomy, 50)
            assert tt.parent == 10
            assert tt.count == 4
            assert len(tt.description) == 255
            thumb = session.scalar(select(TermMeta.meta_value).where(
                TermMeta.term_id == 50, TermMeta.meta_key == "thumbnail_id"))
            assert thumb == "777"

    def test_sync_term_updates_name(self, store, replicator):
        replicator.sync_term(make_term(50, "old-slug", "Old"), "product_cat")
        replicator.sync_term(make_term(50, "new-slug", "New"), "product_cat")
        with store.session() as session:
            term = session.get(Term, 50)
            assert (term.name, term.slug) == ("New", "new-slug")

    def test_alias_taxonomy_mapped(self, store, replicator):
        replicator.sync_term(make_term(60, "adidas"), "pwb-brand")
        with store.session() as session:
            taxonomy = session.scalar(select(TermTaxonomy.taxonomy).where(TermTaxonomy.term_id == 60))
        assert taxonomy == "product_brand"

    def test_accepts_term_id_key(self, store, replicator):
        assert replicator.sync_term({"term_id": 61, "name": "X", "slug": "x"}, "product_tag") == 61

    def test_missing_id_returns_none(self, replicator):
        assert replicator.sync_term({"name": "No id"}, "product_cat") is None

    def test_taken_term_taxonomy_id_falls_back(self, store, replicator):
        replicator.sync_term(make_term(5, term_taxonomy_id=20), "product_cat")
        tt_id = replicator.sync_term(make_term(20, "summer"), "product_tag")
        assert tt_id == 21
        with store.session() as session:
            tt = session.get(TermTaxonomy, tt_id)
            assert (tt.term_id, tt.taxonomy) == (20, "product_tag")

    def test_taken_id_allocates_past_maximum(self, store, replicator):
        replicator.sync_term(make_term(5, term_taxonomy_id=20), "product_cat")
        replicator.sync_term(make_term(6, term_taxonomy_id=90), "product_cat")

        replicator.sync(make_item(100, tags=[make_term(20, "summer")]))

        assert linked_terms(store, 100, "product_tag") == [20]
        with store.session() as session:
            tt_id = session.scalar(select(TermTaxonomy.term_taxonomy_id).where(
                TermTaxonomy.term_id == 20, TermTaxonomy.taxonomy == "product_tag"))
        assert tt_id == 91

    def test_delete_term(self, store, replicator):
        replicator.sync(make_item(100, categories=[make_term(10), make_term(11)]))
        replicator.delete_term(10, "product_cat")

        assert linked_terms(store, 100, "product_cat") == [11]
        with store.session() as session:
            assert session.get(Term, 10) is None
            assert session.scalar(select(TermTaxonomy).where(TermTaxonomy.term_id == 10)) is None


class TestSyncErrors:
    def test_store_failure_raises_sync_error(self, store, replicator, metrics):
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE wp_postmeta"))

        with pytest.raises(SyncError) as exc_info:
            replicator.sync(make_item(100))

        assert exc_info.value.item_id == 100
        assert exc_info.value.step == "rewrite_attributes"
        assert metrics.sync_counts["failed"] == 1
        # Steps before the failure stay applied
        assert _post(store, 100) is not None

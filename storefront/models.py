"""
SQLAlchemy models for the catalog replica.

The replica mirrors the WooCommerce table layout so that rows can be compared
one-to-one with the upstream database:

- wp_posts                   products, variations and image attachments
- wp_postmeta                scalar attributes, one row per (post_id, meta_key)
- wp_terms / wp_term_taxonomy / wp_term_relationships / wp_termmeta
- wp_wc_product_meta_lookup  pre-aggregated filter columns, one row per product

None of these rows are authoritative; the upstream catalog always wins.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from storefront.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
AutoId = BigInteger().with_variant(Integer, "sqlite")

POST_TYPE_PRODUCT = "product"
POST_TYPE_VARIATION = "product_variation"
POST_TYPE_ATTACHMENT = "attachment"


class Post(Base):
    """Product, product variation or attachment row. The id is assigned upstream."""
    __tablename__ = "wp_posts"

    id = Column("ID", BigInteger, primary_key=True, autoincrement=False)
    post_author = Column(BigInteger, nullable=False, default=0)
    post_date = Column(DateTime, nullable=True)
    post_date_gmt = Column(DateTime, nullable=True)
    post_content = Column(Text, nullable=False, default="")
    post_title = Column(Text, nullable=False, default="")
    post_excerpt = Column(Text, nullable=False, default="")
    post_status = Column(String(20), nullable=False, default="publish")
    comment_status = Column(String(20), nullable=False, default="open")
    ping_status = Column(String(20), nullable=False, default="closed")
    post_name = Column(String(200), nullable=False, default="", index=True)
    post_modified = Column(DateTime, nullable=True)
    post_modified_gmt = Column(DateTime, nullable=True)
    post_parent = Column(BigInteger, nullable=False, default=0, index=True)
    guid = Column(Text, nullable=False, default="")
    menu_order = Column(Integer, nullable=False, default=0)
    post_type = Column(String(20), nullable=False, default=POST_TYPE_PRODUCT)
    post_mime_type = Column(String(100), nullable=False, default="")

    __table_args__ = (
        Index("ix_wp_posts_type_status_date", "post_type", "post_status", "post_date", "ID"),
    )


class PostMeta(Base):
    """Scalar attribute. At most one live value per (post_id, meta_key)."""
    __tablename__ = "wp_postmeta"

    meta_id = Column(AutoId, primary_key=True, autoincrement=True)
    post_id = Column(BigInteger, nullable=False, index=True)
    meta_key = Column(String(255), nullable=False)
    meta_value = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("post_id", "meta_key", name="uq_wp_postmeta_post_key"),
        Index("ix_wp_postmeta_key_value", "meta_key", "meta_value"),
    )


class Term(Base):
    __tablename__ = "wp_terms"

    term_id = Column(AutoId, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, default="")
    slug = Column(String(200), nullable=False, default="", index=True)
    term_group = Column(BigInteger, nullable=False, default=0)


class TermTaxonomy(Base):
    """Places a term in a taxonomy (product_cat, product_brand, pa_color, ...)."""
    __tablename__ = "wp_term_taxonomy"

    term_taxonomy_id = Column(AutoId, primary_key=True, autoincrement=True)
    term_id = Column(BigInteger, nullable=False, index=True)
    taxonomy = Column(String(32), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    parent = Column(BigInteger, nullable=False, default=0)
    count = Column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("term_id", "taxonomy", name="uq_wp_term_taxonomy_term_taxonomy"),
    )


class TermRelationship(Base):
    """Links an item to a term_taxonomy row. The pair is unique."""
    __tablename__ = "wp_term_relationships"

    object_id = Column(BigInteger, primary_key=True, autoincrement=False)
    term_taxonomy_id = Column(BigInteger, primary_key=True, autoincrement=False, index=True)
    term_order = Column(Integer, nullable=False, default=0)


class TermMeta(Base):
    __tablename__ = "wp_termmeta"

    meta_id = Column(AutoId, primary_key=True, autoincrement=True)
    term_id = Column(BigInteger, nullable=False, index=True)
    meta_key = Column(String(255), nullable=False)
    meta_value = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("term_id", "meta_key", name="uq_wp_termmeta_term_key"),
    )


class ProductMetaLookup(Base):
    """
    Pre-aggregated filter columns for one product.

    Always derived from the product's wp_postmeta rows written in the same
    sync, so list filtering is a single-table predicate instead of a join per
    attribute.
    """
    __tablename__ = "wp_wc_product_meta_lookup"

    product_id = Column(BigInteger, primary_key=True, autoincrement=False)
    sku = Column(String(100), nullable=False, default="", index=True)
    virtual = Column(Boolean, nullable=False, default=False)
    downloadable = Column(Boolean, nullable=False, default=False)
    min_price = Column(Float, nullable=False, default=0, index=True)
    max_price = Column(Float, nullable=False, default=0, index=True)
    onsale = Column(Boolean, nullable=False, default=False)
    stock_quantity = Column(Float, nullable=True)
    stock_status = Column(String(100), nullable=False, default="instock")
    rating_count = Column(BigInteger, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0)
    total_sales = Column(BigInteger, nullable=False, default=0)
    tax_status = Column(String(100), nullable=False, default="taxable")
    tax_class = Column(String(100), nullable=False, default="")

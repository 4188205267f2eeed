"""
Pydantic v2 schemas for upstream payloads and list queries.

Upstream payload schemas are lenient: WooCommerce sends many more fields than
the replica needs (extra="allow") and often sends numbers as strings, so scalar
fields are typed loosely and coerced by the replicator with documented defaults.
A field that still fails validation falls back to its default instead of
rejecting the whole item; only a missing or non-numeric item ``id`` is fatal.
Query schemas are strict (extra="forbid").
"""

from datetime import datetime
from typing import Any, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)

Scalar = Optional[Union[str, int, float]]


def _text_or_empty(v: Any) -> Any:
    if v is None:
        return ""
    return v if isinstance(v, str) else str(v)


def _text_or_none(v: Any) -> Any:
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, (dict, list)):
        return None
    return str(v)


def _objects(v: Any) -> List[Any]:
    """Keep the dict entries of a list; anything else becomes an empty list."""
    if not isinstance(v, list):
        return []
    return [entry for entry in v if isinstance(entry, dict)]


def _or_none(v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
    try:
        return handler(v)
    except ValidationError:
        return None


def _or_zero(v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
    if v in (None, ""):
        return 0
    try:
        return handler(v)
    except ValidationError:
        return 0


#
# Upstream catalog payloads
#

class TermRef(BaseModel):
    """A term as embedded in a product payload or sent by the term webhook."""
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = Field(None, description="Upstream term_id")
    name: str = ""
    slug: str = ""
    term_taxonomy_id: Optional[int] = Field(None, description="Upstream term_taxonomy_id when known")
    parent: int = 0
    description: str = ""
    count: int = 0
    image: Optional[dict] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_term_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("id") is None and data.get("term_id") is not None:
            data = {**data, "id": data["term_id"]}
        return data

    @field_validator("name", "slug", "description", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _text_or_empty(v)

    @field_validator("id", "term_taxonomy_id", "image", mode="wrap")
    @classmethod
    def _optional(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        # A term without a usable id is skipped by the replicator
        return _or_none(v, handler)

    @field_validator("parent", "count", mode="wrap")
    @classmethod
    def _zero(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        return _or_zero(v, handler)


class ImagePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    src: Optional[str] = None
    source_url: Optional[str] = None
    url: Optional[str] = None
    name: str = ""
    alt: str = ""
    date_created: Optional[datetime] = None
    date_created_gmt: Optional[datetime] = None
    date_modified: Optional[datetime] = None
    date_modified_gmt: Optional[datetime] = None

    @field_validator("src", "source_url", "url", mode="before")
    @classmethod
    def _url(cls, v: Any) -> Any:
        return _text_or_none(v)

    @field_validator("name", "alt", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _text_or_empty(v)

    @field_validator(
        "id", "date_created", "date_created_gmt", "date_modified", "date_modified_gmt", mode="wrap"
    )
    @classmethod
    def _optional(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        # An image without a usable id is skipped by the replicator
        return _or_none(v, handler)

    @property
    def resolved_url(self) -> str:
        """First non-empty of src, source_url, url; empty string when none."""
        for candidate in (self.src, self.source_url, self.url):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""


class Dimensions(BaseModel):
    model_config = ConfigDict(extra="allow")

    length: Scalar = None
    width: Scalar = None
    height: Scalar = None

    @field_validator("length", "width", "height", mode="wrap")
    @classmethod
    def _scalar(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        return _or_none(v, handler)


class AttributePayload(BaseModel):
    """Product attribute (options) or variation attribute (single option)."""
    model_config = ConfigDict(extra="allow")

    id: int = 0
    name: str = ""
    slug: Optional[str] = None
    option: Optional[str] = None
    options: List[str] = Field(default_factory=list)

    @field_validator("id", mode="wrap")
    @classmethod
    def _zero(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        return _or_zero(v, handler)

    @field_validator("name", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _text_or_empty(v)

    @field_validator("slug", "option", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> Any:
        return _text_or_none(v)

    @field_validator("options", mode="before")
    @classmethod
    def _options(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [str(o) for o in v if o is not None and not isinstance(o, (dict, list))]


class MetaDataPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    # An entry without a key never matches a lookup
    key: str = ""
    value: Any = None

    @field_validator("key", mode="before")
    @classmethod
    def _key(cls, v: Any) -> Any:
        return _text_or_empty(v)


class CatalogItemPayload(BaseModel):
    """
    Canonical product or variation as returned by the WooCommerce REST API
    (wc/v3 /products, /products/{id}, /products/{id}/variations/{vid}) or
    delivered by a product webhook.
    """
    model_config = ConfigDict(extra="allow")

    id: int = Field(..., description="Upstream product id; never generated locally")
    name: str = ""
    slug: str = ""
    permalink: str = ""
    type: str = "simple"
    status: str = "publish"
    description: str = ""
    short_description: str = ""
    sku: str = ""
    price: Scalar = None
    regular_price: Scalar = None
    sale_price: Scalar = None
    date_created: Optional[datetime] = None
    date_created_gmt: Optional[datetime] = None
    date_modified: Optional[datetime] = None
    date_modified_gmt: Optional[datetime] = None
    parent_id: int = 0
    menu_order: int = 0
    manage_stock: Any = False
    stock_quantity: Scalar = None
    stock_status: Optional[str] = None
    virtual: bool = False
    downloadable: bool = False
    weight: Scalar = None
    dimensions: Optional[Dimensions] = None
    tax_status: Optional[str] = None
    tax_class: Optional[str] = None
    total_sales: Scalar = None
    average_rating: Scalar = None
    rating_count: Scalar = None
    upsell_ids: List[int] = Field(default_factory=list)
    cross_sell_ids: List[int] = Field(default_factory=list)
    images: List[ImagePayload] = Field(default_factory=list)
    # None means "field absent": that taxonomy is left untouched by sync
    categories: Optional[List[TermRef]] = None
    tags: Optional[List[TermRef]] = None
    brands: Optional[List[TermRef]] = None
    locations: Optional[List[TermRef]] = None
    attributes: List[AttributePayload] = Field(default_factory=list)
    meta_data: Optional[List[MetaDataPayload]] = None
    author: Scalar = None
    post_author: Scalar = None

    @model_validator(mode="before")
    @classmethod
    def _variation_image(cls, data: Any) -> Any:
        # Variations carry a single "image" object instead of "images"
        if isinstance(data, dict) and not data.get("images") and isinstance(data.get("image"), dict):
            data = {**data, "images": [data["image"]]}
        return data

    @field_validator(
        "name", "slug", "permalink", "description", "short_description", "sku", mode="before"
    )
    @classmethod
    def _text(cls, v: Any) -> Any:
        return _text_or_empty(v)

    @field_validator("type", "status", mode="before")
    @classmethod
    def _kind(cls, v: Any, info: ValidationInfo) -> Any:
        if v in (None, "") or isinstance(v, (dict, list)):
            return "simple" if info.field_name == "type" else "publish"
        return v if isinstance(v, str) else str(v)

    @field_validator("stock_status", "tax_status", "tax_class", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> Any:
        return _text_or_none(v)

    @field_validator("virtual", "downloadable", mode="wrap")
    @classmethod
    def _flag(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        try:
            return handler(v)
        except ValidationError:
            return False

    @field_validator("parent_id", "menu_order", mode="wrap")
    @classmethod
    def _zero(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        return _or_zero(v, handler)

    @field_validator(
        "price", "regular_price", "sale_price", "stock_quantity", "weight", "dimensions",
        "total_sales", "average_rating", "rating_count", "author", "post_author",
        mode="wrap",
    )
    @classmethod
    def _scalar(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        return _or_none(v, handler)

    @field_validator("date_created", "date_created_gmt", "date_modified", "date_modified_gmt", mode="wrap")
    @classmethod
    def _date(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        if v in ("", "0000-00-00 00:00:00"):
            return None
        return _or_none(v, handler)

    @field_validator("upsell_ids", "cross_sell_ids", mode="before")
    @classmethod
    def _ids(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return []
        return [i for i in v if isinstance(i, int) or (isinstance(i, str) and i.strip().isdigit())]

    @field_validator("images", "attributes", mode="before")
    @classmethod
    def _entries(cls, v: Any) -> Any:
        return _objects(v)

    @field_validator("categories", "tags", "brands", "locations", "meta_data", mode="before")
    @classmethod
    def _optional_entries(cls, v: Any) -> Any:
        # Anything but a list is treated as an absent field
        if not isinstance(v, list):
            return None
        return _objects(v)

    @property
    def is_variation(self) -> bool:
        return self.type == "variation" or self.parent_id > 0

    def meta_value(self, key: str) -> Any:
        for entry in self.meta_data or []:
            if entry.key == key:
                return entry.value
        return None


#
# List queries
#

class AttributeFilter(BaseModel):
    """One attribute taxonomy facet, e.g. taxonomy='pa_color', terms=['red', 'blue']."""
    model_config = ConfigDict(extra="forbid")

    taxonomy: str
    terms: List[str] = Field(default_factory=list)


class ProductFilter(BaseModel):
    """All list filters; every active filter is ANDed with the others."""
    model_config = ConfigDict(extra="forbid")

    search: Optional[str] = Field(None, description="Substring match over title and content")
    category: Optional[Union[int, str]] = Field(None, description="product_cat term id or slug")
    category_name: Optional[str] = Field(None, description="product_cat slug")
    tags: List[str] = Field(default_factory=list, description="product_tag slugs")
    brands: List[str] = Field(default_factory=list, description="Brand slugs, any brand taxonomy")
    locations: List[str] = Field(default_factory=list, description="product_location slugs")
    attributes: List[AttributeFilter] = Field(default_factory=list)
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    status: str = "publish"
    vendor_id: Optional[Union[int, str]] = Field(None, description="_wcfm_product_author value")

    @field_validator("search", "category_name", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class Pagination(BaseModel):
    """
    Offset mode: page/per_page. Cursor mode: first/after.

    Cursor mode is active whenever ``first`` is set.
    """
    model_config = ConfigDict(extra="forbid")

    page: int = Field(1, ge=1)
    per_page: int = Field(10, ge=1, le=100)
    first: Optional[int] = Field(None, ge=1, le=100)
    after: Optional[str] = None


class PageInfo(BaseModel):
    has_next_page: bool
    has_previous_page: bool
    start_cursor: Optional[str] = None
    end_cursor: Optional[str] = None


class ProductPage(BaseModel):
    """One page of product ids in newest-first order plus the total match count."""
    ids: List[int]
    total_count: int
    offset: int
    cursors: List[str] = Field(default_factory=list)
    page_info: PageInfo

"""
HTTP client for the authoritative WooCommerce REST API (wp-json/wc/v3).

Uses httpx directly with Basic auth (consumer key / consumer secret). Responses
are returned as parsed JSON and copied into the replica by the caller; nothing
here caches or mutates them.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

import httpx

from storefront.config import StorefrontConfig
from storefront.logger import get_logger

logger = get_logger("catalog_client")

API_PREFIX = "/wp-json/wc/v3"
USER_AGENT = "storefront-replica/0.1"


class CatalogAPIError(Exception):
    """Non-2xx response from the upstream catalog. Carries status and parsed body."""

    def __init__(self, status: int, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.data = data if data is not None else {}

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.message}"


class CatalogClient:
    """
    Thin client over the upstream catalog.

    ``get/post/put/delete`` take paths relative to the wc/v3 prefix, e.g.
    ``client.get("/products", {"per_page": 50})``.
    """

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        if not consumer_key or not consumer_secret:
            logger.warning("WC_CONSUMER_KEY or WC_CONSUMER_SECRET not set; upstream calls will be rejected")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + API_PREFIX,
            auth=httpx.BasicAuth(consumer_key or "", consumer_secret or ""),
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: StorefrontConfig, transport: Optional[httpx.BaseTransport] = None) -> "CatalogClient":
        return cls(
            config.wc_url,
            config.wc_consumer_key,
            config.wc_consumer_secret,
            timeout=config.wc_request_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Raw verbs
    # ------------------------------------------------------------------

    def get(self, path: str, query: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=query)

    def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("POST", path, json=body or {})

    def put(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("PUT", path, json=body or {})

    def delete(self, path: str, query: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("DELETE", path, params=query)

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """
        Send one request and return the parsed JSON body.

        Raises CatalogAPIError for non-2xx responses; transport failures
        (timeouts, connection errors) propagate as httpx.RequestError.
        """
        params = _stringify_params(params)
        resp = self._client.request(method, path, params=params, json=json)
        if resp.is_success:
            if not resp.content:
                return None
            return resp.json()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("message") if isinstance(body, dict) else None
        logger.warning("catalog: %s %s -> HTTP %s %s", method, path, resp.status_code, message or "")
        raise CatalogAPIError(resp.status_code, message or resp.reason_phrase, body)

    # ------------------------------------------------------------------
    # Catalog helpers
    # ------------------------------------------------------------------

    def get_product(self, product_id: int) -> Dict[str, Any]:
        return self.get(f"/products/{product_id}")

    def list_products(self, page: int = 1, per_page: int = 50, **query: Any) -> List[Dict[str, Any]]:
        return self.get("/products", {"page": page, "per_page": per_page, **query}) or []

    def iter_products(self, per_page: int = 50, **query: Any) -> Iterator[Dict[str, Any]]:
        """Walk every page of /products until an empty page comes back."""
        page = 1
        while True:
            batch = self.list_products(page=page, per_page=per_page, **query)
            if not batch:
                return
            yield from batch
            if len(batch) < per_page:
                return
            page += 1

    def list_variations(self, product_id: int, per_page: int = 100) -> List[Dict[str, Any]]:
        return self.get(f"/products/{product_id}/variations", {"per_page": per_page}) or []

    def create_product(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.post("/products", data)

    def update_product(self, product_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.put(f"/products/{product_id}", data)

    def delete_product(self, product_id: int, force: bool = True) -> Dict[str, Any]:
        return self.delete(f"/products/{product_id}", {"force": force})

    def list_categories(self, per_page: int = 100, page: int = 1) -> List[Dict[str, Any]]:
        return self.get("/products/categories", {"per_page": per_page, "page": page}) or []


def _stringify_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """WooCommerce expects 'true'/'false' for booleans; drop None values."""
    if not params:
        return params
    out: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = value
    return out

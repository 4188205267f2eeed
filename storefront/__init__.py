"""
storefront - headless storefront catalog replica

A read replica of a WooCommerce catalog with:
- Idempotent per-item synchronization from the upstream REST API
- Batched per-request loaders over the replica tables
- Typed list query builder with offset and cursor pagination
- Versioned Redis read-through cache
"""

__version__ = "0.1.0"

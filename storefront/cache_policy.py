"""
Storefront Redis caching policy: what gets cached, TTLs, and invalidation rules.

This module documents the caching strategy. It is imported by cache.py for
TTL constants and key patterns.

Architecture:
  Upstream catalog → source of truth (WooCommerce REST API)
  Replica store    → relational copy, updated by the replicator
  Redis            → read-through cache over the replica (TTL + version token)

Every key is prefixed with the configured namespace (default "storefront").
"""

# ────────────────────────────────────────────────────────────────────────────
# Cache Policy Table
# ────────────────────────────────────────────────────────────────────────────
#
# Data Type        | Key Pattern                              | TTL     | Invalidated by
# -----------------+------------------------------------------+---------+------------------------
# Single product   | {ns}:product:{id}                        | 1 hour  | invalidate_item(id)
# Product list     | {ns}:products:v{version}:{sha256[:16]}   | 15 min  | invalidate_all()
# Catalog version  | {ns}:catalog_version                     | None    | INCR on every write
#
# ────────────────────────────────────────────────────────────────────────────
# Consistency Expectations
# ────────────────────────────────────────────────────────────────────────────
#
# - List keys embed the catalog version read at request time. A write bumps
#   the version, so later reads compute under a new key; entries under older
#   versions are never read again and expire by TTL.
# - A read racing a write may cache a pre-write result under the old version.
#   That entry is unreachable once the bump lands.
# - A single product may be stale for one request window: invalidate_item()
#   runs after the replica is updated, and a read that started before it can
#   repopulate the old value until its TTL passes. Webhook redelivery or the
#   next write clears it.
# - If Redis is down or disabled, every read computes from the replica.
#
# ────────────────────────────────────────────────────────────────────────────
# Invalidation Strategy
# ────────────────────────────────────────────────────────────────────────────
#
# Per write (local write path and webhook):
#   1. replicator.sync(item) / replicator.delete(id)
#   2. invalidate_item(id)   → DEL {ns}:product:{id}
#   3. invalidate_all()      → INCR {ns}:catalog_version
#
# Term changes only bump the version (lists may filter by any term).

# TTL constants (seconds); overridable via CACHE_TTL_PRODUCT / CACHE_TTL_LIST
DEFAULT_TTL_PRODUCT = 3600          # 1 hour
DEFAULT_TTL_LIST = 900              # 15 minutes

# Key patterns (without namespace)
PRODUCT_KEY = "product:{item_id}"
LIST_KEY = "products:v{version}:{digest}"
VERSION_KEY = "catalog_version"

# Length of the sha256 hex digest kept in list keys
LIST_KEY_DIGEST_LENGTH = 16

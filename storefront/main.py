"""
Storefront replica - FastAPI application

Hosts the webhook receiver plus health and metrics endpoints. All shared
resources (replica store, Redis, upstream client) are built in the lifespan
handler and hung on ``app.state``; nothing is opened at import time.

Run with:
    uvicorn storefront.main:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis
import uvicorn
from fastapi import FastAPI, Request
from sqlalchemy import text

from storefront import __version__
from storefront.cache import CacheClient, CacheCoordinator
from storefront.catalog_client import CatalogClient
from storefront.catalog_service import CatalogService
from storefront.config import StorefrontConfig, get_config
from storefront.database import ReplicaStore
from storefront.logger import configure_logging, get_logger
from storefront.metrics import MetricsCollector
from storefront.replicator import Replicator
from storefront.webhooks import router as webhook_router

logger = get_logger("main")


def create_app(
    config: Optional[StorefrontConfig] = None,
    redis_client: Optional["redis.Redis"] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: defaults to the process config (YAML + environment)
        redis_client: use this connection instead of one built from REDIS_URL
        transport: httpx transport for the upstream client (tests use MockTransport)
    """
    config = config or get_config()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        metrics = MetricsCollector()
        store = ReplicaStore(config.database_url).open()
        store.create_schema()

        cache_client = None
        if config.cache_enabled:
            if redis_client is not None:
                cache_client = CacheClient(redis_client, namespace=config.cache_namespace, metrics=metrics)
            else:
                cache_client = CacheClient.from_config(config, metrics=metrics)
            if not cache_client.ping():
                logger.warning("Redis not reachable at startup; reads will fall through to the replica")
        else:
            logger.info("Cache disabled (CACHE_ENABLED=false)")

        coordinator = CacheCoordinator(
            cache_client,
            metrics=metrics,
            ttl_product=config.cache_ttl_product,
            ttl_list=config.cache_ttl_list,
        )
        client = CatalogClient.from_config(config, transport=transport)
        replicator = Replicator(store, reject_stale=config.sync_reject_stale, metrics=metrics)

        app.state.config = config
        app.state.metrics = metrics
        app.state.store = store
        app.state.cache = coordinator
        app.state.catalog_service = CatalogService(client, replicator, coordinator, store, metrics=metrics)
        logger.info("Storefront replica started")

        try:
            yield
        finally:
            client.close()
            if cache_client is not None:
                cache_client.close()
            store.close()
            logger.info("Storefront replica stopped")

    app = FastAPI(
        title="Storefront Replica",
        description="Catalog replica of a WooCommerce store with a versioned Redis cache",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(webhook_router)

    @app.get("/health")
    def health_check(request: Request):
        """Database and cache connectivity."""
        health_status = {
            "service": "healthy",
            "database": "unknown",
            "cache": "disabled",
        }

        try:
            with request.app.state.store.session() as session:
                session.execute(text("SELECT 1"))
            health_status["database"] = "healthy"
        except Exception as e:
            health_status["database"] = f"unhealthy: {str(e)}"
            health_status["service"] = "degraded"

        cache = request.app.state.cache.cache
        if cache is not None:
            if cache.ping():
                health_status["cache"] = "healthy"
            else:
                health_status["cache"] = "unhealthy: no response"
                health_status["service"] = "degraded"

        return health_status

    @app.get("/metrics")
    def get_metrics(request: Request):
        return request.app.state.metrics.get_summary()

    return app


if __name__ == "__main__":
    uvicorn.run("storefront.main:create_app", factory=True, host="0.0.0.0", port=8000)

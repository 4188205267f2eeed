"""
Webhook receiver for upstream catalog pushes.

POST /webhooks/sync
    X-WC-Webhook-Topic:      product.created | product.updated | product.restored
                             product.deleted
                             <taxonomy>.created | <taxonomy>.updated | <taxonomy>.deleted
    X-WC-Webhook-Signature:  base64(HMAC-SHA256(raw body, WEBHOOK_SECRET))

A non-2xx response makes WooCommerce redeliver, so sync failures return 500.
"""

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from storefront.catalog_service import CatalogService
from storefront.logger import get_logger
from storefront.replicator import TAXONOMY_ALIASES, SyncError

logger = get_logger("webhooks")

router = APIRouter(tags=["webhooks"])

TOPIC_HEADER = "x-wc-webhook-topic"
SIGNATURE_HEADER = "x-wc-webhook-signature"

PRODUCT_SYNC_EVENTS = ("created", "updated", "restored")
TERM_TAXONOMIES = ("product_cat", "product_tag", "product_brand", "product_location") + tuple(TAXONOMY_ALIASES)


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip())


def is_term_topic(resource: str) -> bool:
    return resource in TERM_TAXONOMIES or resource.startswith("pa_")


@router.post("/webhooks/sync")
async def webhook_sync(request: Request) -> Dict[str, Any]:
    """Verify, then apply one pushed product or term change to the replica."""
    secret = request.app.state.config.webhook_secret
    if not secret:
        logger.error("WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()
    topic = request.headers.get(TOPIC_HEADER, "")

    # WooCommerce confirms a new webhook with a form-encoded ping and no topic
    if not topic and body.startswith(b"webhook_id="):
        logger.info("Webhook ping received (%s)", body.decode(errors="replace"))
        return {"status": "ok", "topic": "ping"}

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    if not verify_signature(body, signature, secret):
        logger.warning("Webhook rejected: invalid signature for topic %s", topic)
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    service: CatalogService = request.app.state.catalog_service
    logger.info("Received webhook: %s (id=%s)", topic, payload.get("id"))

    try:
        action = await run_in_threadpool(dispatch, service, topic, payload)
    except SyncError as e:
        logger.error("Webhook %s failed: %s", topic, e)
        raise HTTPException(status_code=500, detail=str(e))
    except ValidationError as e:
        logger.warning("Webhook %s payload rejected: %s", topic, e)
        raise HTTPException(status_code=400, detail="Invalid payload")

    return {"status": "ok", "topic": topic, "action": action}


def dispatch(service: CatalogService, topic: str, payload: Dict[str, Any]) -> str:
    """Route a verified webhook payload; returns the action taken."""
    resource, _, event = topic.partition(".")

    if resource == "product":
        if event in PRODUCT_SYNC_EVENTS:
            service.sync_item(payload)
            return "synced"
        if event == "deleted":
            item_id = _payload_id(payload)
            service.remove_item(item_id)
            return "deleted"

    elif is_term_topic(resource):
        taxonomy = payload.get("taxonomy") or resource
        if event in ("created", "updated"):
            service.sync_term(payload, taxonomy)
            return "term_synced"
        if event == "deleted":
            service.delete_term(_payload_id(payload), taxonomy)
            return "term_deleted"

    logger.info("Ignoring webhook topic %r", topic)
    return "ignored"


def _payload_id(payload: Dict[str, Any]) -> int:
    raw = payload.get("id", payload.get("term_id"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Payload has no id")

"""Webhook receiver — FastAPI endpoint for GitHub webhook delivery.

Validates the HMAC-SHA256 signature and rate limits before enqueuing the
delivery for the Event Router. Responds 200 immediately; deployments run
later on the deferred queue.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from branchoff.models import GitHubEvent

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[GitHubEvent] | None = None
_webhook_secret: str | None = None

# Rate limiting state
_rate_limit_max: int = 60  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []


def configure(
    event_queue: asyncio.Queue[GitHubEvent],
    *,
    webhook_secret: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the webhook endpoint to the event queue.

    Args:
        event_queue: Queue consumed by the Event Router.
        webhook_secret: Shared secret for signature checks; ``None`` disables them.
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
    """
    global _event_queue, _webhook_secret, _rate_limit_max, _rate_limit_timestamps
    _event_queue = event_queue
    _webhook_secret = webhook_secret
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []
    if not webhook_secret:
        logger.warning("No webhook secret configured — signatures will not be verified")


def verify_signature(secret: str | None, payload: bytes, signature: str) -> bool:
    """Verify an ``X-Hub-Signature-256`` header against the raw body."""
    if not secret:
        return True

    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


@router.post("/github/postreceive")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive and enqueue a GitHub webhook delivery.

    Checks, in order: rate limit, signature, JSON body. Normalization and
    rejection of unusable events happen in the router.
    """
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()

    if not verify_signature(_webhook_secret, body, x_hub_signature_256):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Malformed webhook body for delivery %s", x_github_delivery)
        return Response(status_code=400, content="Malformed payload")
    if not isinstance(payload, dict):
        return Response(status_code=400, content="Malformed payload")

    event = GitHubEvent(
        delivery_id=x_github_delivery,
        event_type=x_github_event,
        payload=payload,
    )

    logger.info(
        "Webhook received: %s (delivery=%s, sender=%s)",
        event.event_type,
        x_github_delivery,
        event.sender,
    )

    if _event_queue is not None:
        await _event_queue.put(event)
    else:
        logger.error("Event queue not configured — dropping event %s", x_github_delivery)

    return Response(status_code=200, content="ok")

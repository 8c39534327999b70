"""Linear webhook authentication.

Linear signs each delivery with HMAC-SHA256 over the raw body and includes a
millisecond ``webhookTimestamp`` in the payload. Both are checked before the
body is handed to the reconciler.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any

from fastapi import Header, HTTPException, Request

from src.config import get_settings

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time comparison of the hex signature header against the body's HMAC."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(raw_body, secret), signature.strip().lower())


def is_fresh(timestamp_ms: object, max_age_seconds: float, now: float | None = None) -> bool:
    """True if ``timestamp_ms`` is a number within ``max_age_seconds`` of now."""
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int | float):
        return False
    now = time.time() if now is None else now
    return abs(now * 1000 - timestamp_ms) <= max_age_seconds * 1000


async def verify_linear_webhook(
    request: Request,
    linear_signature: str | None = Header(default=None),
) -> dict[str, Any]:
    """FastAPI dependency: authenticate a delivery and return its decoded body.

    Raises:
        HTTPException: 401 for a missing secret, bad signature, or stale or
            missing timestamp; 400 for a body that is not a JSON object.
    """
    settings = get_settings()
    secret = settings.linear_webhook_secret
    if not secret:
        logger.error("Rejecting webhook: LINEAR_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=401, detail="Webhook secret not configured")

    raw_body = await request.body()
    if not verify_signature(raw_body, linear_signature, secret):
        logger.warning("Rejecting webhook: invalid Linear signature")
        raise HTTPException(status_code=401, detail="Invalid Linear signature")

    try:
        payload: object = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    if not is_fresh(payload.get("webhookTimestamp"), settings.webhook_max_age_seconds):
        logger.warning("Rejecting webhook: missing or stale webhookTimestamp")
        raise HTTPException(status_code=401, detail="Stale or missing webhook timestamp")

    return payload

"""Shared-secret checks for the inbound webhook and the sweep trigger."""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException, Request

from config import settings
from core.errors import AuthError

logger = logging.getLogger("carewatch.security")

SIGNATURE_HEADER = "x-signature"
CRON_SECRET_HEADER = "x-cron-secret"


def _mask(k: str) -> str:
    k = (k or "").strip()
    if not k:
        return "None"
    n = len(k)
    return f"{k[:4]}***{k[-4:]}(len={n})" if n > 8 else f"{k[:2]}***{k[-2:]}(len={n})"


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """HMAC-SHA256 of the raw body, hex, optionally prefixed with 'sha256='.

    An empty secret disables the check.
    """
    if not secret:
        return
    received = (signature or "").strip()
    if received.lower().startswith("sha256="):
        received = received[7:]
    if not received:
        raise AuthError("missing signature")
    expected = sign_body(body, secret)
    if not hmac.compare_digest(expected.encode(), received.lower().encode()):
        logger.warning("Webhook signature mismatch: received=%s", _mask(received))
        raise AuthError("signature mismatch")


async def enforce_webhook_signature(request: Request) -> bytes:
    """Dependency: returns the raw body once its signature checks out."""
    body = await request.body()
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.WEBHOOK_SECRET)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid signature: {exc}")
    return body


def enforce_sweep_secret(request: Request) -> None:
    secret = settings.SWEEP_SECRET
    if not secret:
        return
    provided = request.headers.get(CRON_SECRET_HEADER) or ""
    if not provided:
        auth = request.headers.get("authorization") or ""
        if auth.lower().startswith("bearer "):
            provided = auth[7:]
    if not hmac.compare_digest(provided.strip().encode(), secret.encode()):
        logger.warning("Sweep trigger rejected: received=%s", _mask(provided))
        raise HTTPException(status_code=401, detail="Unauthorized")

"""Messaging gateway client with retry.

Responsibilities:
- HTTP requests to the messaging API (Evolution-style sendText endpoint)
- Classifying failures: network errors / 5xx are transient, 4xx and other
  client errors (decoding, redirects, bad URL) are final
- One retry loop (bounded exponential backoff + full jitter) with
  per-attempt accounting, shared by every notification

Does NOT know about sessions or alerts.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol
from urllib.parse import quote

import httpx

from config import settings
from core.errors import TransientDispatchError
from models.notification_attempt import AttemptStatus
from services.monitoring.registry import normalize_address

logger = logging.getLogger("carewatch.gateway")

DELIVERED = "delivered"
FAILED = "failed"


@dataclass
class GatewayResult:
    status: str
    provider_message_id: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DELIVERED


class Gateway(Protocol):
    async def send(self, target: str, message: str) -> GatewayResult: ...

    async def close(self) -> None: ...


class HttpGateway:

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance = instance
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, target: str, message: str) -> GatewayResult:
        url = f"{self.base_url}/message/sendText/{quote(self.instance)}"
        number = normalize_address(target)
        try:
            resp = await self._client.post(
                url,
                json={"number": number, "text": message},
                headers={"apikey": self.api_key},
            )
        except httpx.TransportError as exc:
            raise TransientDispatchError(f"{type(exc).__name__}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return GatewayResult(FAILED, error=f"{type(exc).__name__}: {exc}")

        if resp.status_code >= 500:
            raise TransientDispatchError(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            return GatewayResult(FAILED, error=f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        key = data.get("key") if isinstance(data, dict) else None
        provider_id = key.get("id") if isinstance(key, dict) else None
        return GatewayResult(DELIVERED, provider_message_id=provider_id)

    async def close(self) -> None:
        await self._client.aclose()


class LogOnlyGateway:
    """Used when no gateway URL is configured: messages are logged, not sent."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    async def send(self, target: str, message: str) -> GatewayResult:
        logger.info("[log-only] to=%s: %s", target, message)
        return GatewayResult(DELIVERED, provider_message_id=f"log-{next(self._ids)}")

    async def close(self) -> None:
        return None


def build_gateway() -> Gateway:
    if settings.GATEWAY_URL:
        return HttpGateway(
            settings.GATEWAY_URL,
            settings.GATEWAY_API_KEY,
            settings.GATEWAY_INSTANCE,
            timeout=settings.GATEWAY_TIMEOUT,
        )
    logger.warning("GATEWAY_URL not set, notifications will only be logged")
    return LogOnlyGateway()


# ---------------------------------------------------------------------------
# Retrying sender
# ---------------------------------------------------------------------------

@dataclass
class SendReport:
    status: AttemptStatus
    attempts: int
    provider_message_id: str | None = None
    last_error: str | None = None


AttemptCallback = Callable[[int, str], Awaitable[None]]


class RetryingSender:

    def __init__(
        self,
        gateway: Gateway,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """Full jitter: uniform(0, min(max, base * 2**(attempt-1)))."""
        cap = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return random.uniform(0, cap)

    async def send(
        self,
        target: str,
        message: str,
        on_retry: AttemptCallback | None = None,
    ) -> SendReport:
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.gateway.send(target, message)
            except TransientDispatchError as exc:
                last_error = str(exc)
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff(attempt)
                logger.warning(
                    "Send to %s failed: %s, retry %d/%d in %.1fs",
                    target, last_error, attempt, self.max_attempts, delay,
                )
                if on_retry is not None:
                    await on_retry(attempt, last_error)
                await self._sleep(delay)
                continue

            if result.delivered:
                return SendReport(AttemptStatus.sent, attempt, result.provider_message_id)
            logger.warning("Send to %s rejected: %s", target, result.error)
            return SendReport(AttemptStatus.failed, attempt, last_error=result.error)

        logger.error(
            "Send to %s exhausted after %d attempts: %s",
            target, self.max_attempts, last_error,
        )
        return SendReport(AttemptStatus.exhausted, self.max_attempts, last_error=last_error)

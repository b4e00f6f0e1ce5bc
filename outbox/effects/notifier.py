"""Notification delivery for built-in handlers: log-only or JSON webhook."""

import logging
from typing import Any, Protocol

import httpx

from outbox.events.dispatcher import PermanentHandlerError, RetryableHandlerError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class Notifier(Protocol):
    """Delivers one notification. Raise to signal failure."""

    async def send(
        self, kind: str, tenant_id: str, subject: str, data: dict[str, Any]
    ) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log. Default when no webhook is configured."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send(
        self, kind: str, tenant_id: str, subject: str, data: dict[str, Any]
    ) -> None:
        self.sent.append((kind, tenant_id, subject))
        logger.info("outbox notify [%s] tenant=%s: %s %s", kind, tenant_id, subject, data)


class WebhookNotifier:
    """POSTs notifications as JSON. 5xx/429/network errors retry, other 4xx are permanent."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._url = url
        self._timeout = timeout

    async def send(
        self, kind: str, tenant_id: str, subject: str, data: dict[str, Any]
    ) -> None:
        body = {"kind": kind, "tenant_id": tenant_id, "subject": subject, "data": data}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=body)
        except httpx.HTTPError as e:
            raise RetryableHandlerError(f"webhook {kind} failed: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RetryableHandlerError(f"webhook {kind} returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentHandlerError(f"webhook {kind} rejected with HTTP {resp.status_code}")
        logger.debug("outbox notify: webhook %s delivered (%d)", kind, resp.status_code)


def build_notifier(cfg: dict[str, Any]) -> Notifier:
    """WebhookNotifier when notifications.webhook_url is set, else LoggingNotifier."""
    url = cfg.get("webhook_url")
    if url:
        return WebhookNotifier(url, timeout=float(cfg.get("timeout", DEFAULT_TIMEOUT)))
    return LoggingNotifier()

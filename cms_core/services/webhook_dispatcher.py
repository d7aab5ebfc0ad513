"""
Webhook Dispatcher

Delivers hook bus events to outbound HTTP endpoints registered by plugins.

Delivery never blocks the code that fired the event: the bus listener only
schedules a task. Transport errors and 5xx responses are retried with
exponential backoff; when the last attempt fails the dispatcher fires
"<plugin>.webhook_failed" once instead of raising.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import itertools
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import httpx

from cms_core.exceptions import RegistrationClosedError, WebhookDeliveryError
from cms_core.plugins.hook_bus import HookBus
from cms_core.plugins.hooks import WEBHOOK_FAILED, plugin_hook

logger = logging.getLogger(__name__)

# Retries after the first attempt
MAX_RETRIES = 3

BACKOFF_BASE = 1.0
BACKOFF_CAP = 30.0
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class WebhookRegistration:
    plugin: str
    event: str
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict, compare=False)
    secret: str | None = field(default=None, repr=False)
    timeout: float = DEFAULT_TIMEOUT
    sequence: int = field(default=0, compare=False)


class WebhookDispatcher:
    """
    Outbound webhook delivery with retry.

    Args:
        hook_bus:       Bus the webhooks listen on and report failures to.
        client_factory: Builds the shared httpx.AsyncClient on first use.
        max_retries:    Retries after the first attempt.
        backoff_base:   Delay before the first retry, doubled per retry.
        backoff_cap:    Upper bound for a single delay.
        timeout:        Default per-request timeout in seconds.
        sleep:          Awaitable used between attempts.
    """

    def __init__(
        self,
        hook_bus: HookBus,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        backoff_cap: float = BACKOFF_CAP,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.hook_bus = hook_bus
        self.client_factory = client_factory or httpx.AsyncClient
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self.sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._webhooks: list[WebhookRegistration] = []
        self._pending: set[asyncio.Task] = set()
        self._sequence = itertools.count()
        self._frozen = False

    def freeze(self) -> None:
        self._frozen = True

    def register_webhook(
        self,
        plugin: str,
        event: str,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        secret: str | None = None,
        timeout: float | None = None,
    ) -> WebhookRegistration:
        """Subscribe `url` to the action `event`, owned by `plugin`."""
        if self._frozen:
            raise RegistrationClosedError("WebhookDispatcher")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Webhook URL must be an absolute http(s) URL, got '{url}'")

        webhook = WebhookRegistration(
            plugin=plugin,
            event=event,
            url=url,
            method=method.upper(),
            headers=dict(headers or {}),
            secret=secret,
            timeout=self.timeout if timeout is None else timeout,
            sequence=next(self._sequence),
        )

        def listener(payload: Any) -> None:
            self.dispatch(webhook, payload)

        self.hook_bus.on(event, listener, plugin=plugin)
        self._webhooks.append(webhook)
        logger.debug("Webhook registered: %s -> %s %s (%s)", event, webhook.method, url, plugin)
        return webhook

    def webhooks(self, plugin: str | None = None) -> list[WebhookRegistration]:
        return [w for w in self._webhooks if plugin is None or w.plugin == plugin]

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── Delivery ──────────────────────────────────────────────────────────────

    def dispatch(self, webhook: WebhookRegistration, payload: Any) -> asyncio.Task:
        """Schedule delivery in the background and return immediately."""
        task = asyncio.create_task(self.deliver(webhook, payload))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook delivery task crashed", exc_info=task.exception())

    def trigger(self, plugin: str, event: str, payload: Any = None) -> list[asyncio.Task]:
        """
        Deliver `payload` to every webhook `plugin` registered for `event`,
        without going through the hook bus.
        """
        tasks = [self.dispatch(w, payload) for w in self._webhooks if w.plugin == plugin and w.event == event]
        if not tasks:
            logger.debug("No webhooks registered by %s for %s", plugin, event)
        return tasks

    def backoff(self, retry: int) -> float:
        """Delay before retry number `retry` (1-based)."""
        return min(self.backoff_cap, self.backoff_base * 2 ** (retry - 1))

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self.client_factory()
        return self._client

    async def deliver(self, webhook: WebhookRegistration, payload: Any) -> bool:
        """
        Deliver one event, retrying transient failures.

        Returns:
            True on a 2xx response; False once the failure has been reported
            through "<plugin>.webhook_failed".
        """
        try:
            body = json.dumps(
                {
                    "event": webhook.event,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "plugin": webhook.plugin,
                    "data": payload,
                },
                default=str,
            )
        except (TypeError, ValueError) as e:
            error = WebhookDeliveryError(webhook.url, 0, f"Payload is not JSON serialisable: {e}")
            logger.error("Webhook %s to %s not sent: %s", webhook.event, webhook.url, error.reason)
            await self._report_failure(webhook, error, 0)
            return False

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": webhook.event,
            "X-Webhook-Timestamp": str(int(time.time())),
        }
        if webhook.secret:
            headers["X-Webhook-Signature"] = self.create_signature(webhook.secret, body)
        headers.update(webhook.headers)

        client = self._get_client()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await client.request(
                    webhook.method, webhook.url, content=body, headers=headers, timeout=webhook.timeout
                )
            except httpx.TimeoutException:
                error = WebhookDeliveryError(webhook.url, attempt, "Request timed out")
                retryable = True
            except httpx.RequestError as e:
                error = WebhookDeliveryError(webhook.url, attempt, f"Request error: {e}")
                retryable = True
            else:
                if response.is_success:
                    logger.info("Webhook %s delivered to %s (attempt %d)", webhook.event, webhook.url, attempt)
                    return True
                error = WebhookDeliveryError(
                    webhook.url, attempt, f"HTTP {response.status_code}", response.status_code
                )
                retryable = response.status_code >= 500

            if not retryable or attempt > self.max_retries:
                break
            delay = self.backoff(attempt)
            logger.info(
                "Webhook %s to %s failed (%s); retry %d in %ss",
                webhook.event,
                webhook.url,
                error.reason,
                attempt,
                delay,
            )
            await self.sleep(delay)

        logger.warning("Webhook %s to %s gave up after %d attempt(s): %s", webhook.event, webhook.url, attempt, error.reason)
        await self._report_failure(webhook, error, attempt)
        return False

    async def _report_failure(self, webhook: WebhookRegistration, error: WebhookDeliveryError, attempts: int) -> None:
        await self.hook_bus.fire(
            plugin_hook(webhook.plugin, WEBHOOK_FAILED),
            {"webhook": webhook, "event": webhook.event, "error": error, "attempts": attempts},
        )

    async def drain(self) -> None:
        """Wait for every in-flight delivery, including ones scheduled meanwhile."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def create_signature(secret: str, payload: str) -> str:
        """Create HMAC-SHA256 signature for webhook payload."""
        return hmac.new(
            secret.encode(),
            payload.encode(),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def verify_signature(secret: str, payload: str, signature: str) -> bool:
        """
        Verify a webhook signature.

        Use this on the receiving end to verify webhook authenticity.
        """
        return hmac.compare_digest(WebhookDispatcher.create_signature(secret, payload), signature)

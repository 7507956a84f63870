"""Webhook notifications for pipeline run lifecycle events.

Events:
    run_started: A run left the pending state.
    run_converged: Production runs the new build.
    run_failed: The run ended in the failed state (payload names the stage).

Delivery failures are reported in the results and logged; they never fail a
run.

Example:
    >>> notifier = WebhookNotifier([
    ...     WebhookConfig(url="https://hooks.example.com/ferry", events=["run_failed"]),
    ... ])
    >>> results = asyncio.run(notifier.notify_all("run_failed", {"run_id": "r-1"}))
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ferry_core.schemas.config import WebhookConfig
from ferry_core.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

logger = structlog.get_logger(__name__)


class WebhookNotificationResult(BaseModel):
    """Result of delivering one event to one webhook.

    Attributes:
        success: Whether the endpoint accepted the event.
        status_code: Last HTTP status code received.
        url: Webhook URL.
        error: Last error if delivery failed.
        attempts: Delivery attempts made.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    status_code: int | None = None
    url: str
    error: str | None = None
    attempts: int = Field(default=1, ge=1)


class WebhookNotifier:
    """Posts run events to every subscribed webhook.

    Args:
        configs: Webhook targets.
        backoff_base_seconds: First retry delay; doubles per retry.
        transport: httpx transport override (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        configs: list[WebhookConfig],
        *,
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.configs = list(configs)
        self.backoff_base_seconds = backoff_base_seconds
        self._transport = transport

    def subscribers(self, event_type: str) -> list[WebhookConfig]:
        return [c for c in self.configs if event_type in c.events]

    @staticmethod
    def build_payload(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        return {"event_type": event_type, **event_data}

    async def notify(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """Deliver one event to one webhook, retrying server errors and timeouts.

        Client errors (4xx) are not retried.
        """
        payload = self.build_payload(event_type, event_data)
        max_attempts = 1 + config.retry_count
        last_status: int | None = None
        last_error: str | None = None
        start = time.monotonic()

        with create_span(
            "ferry.webhook.notify",
            attributes={"url": config.url, "event_type": event_type},
        ) as span:
            async with httpx.AsyncClient(
                timeout=config.timeout_seconds,
                transport=self._transport,
            ) as client:
                for attempt in range(1, max_attempts + 1):
                    try:
                        response = await client.post(
                            config.url, json=payload, headers=config.headers or {}
                        )
                    except httpx.TimeoutException:
                        last_error = "Request timed out"
                    except httpx.RequestError as e:
                        last_error = str(e)
                    else:
                        last_status = response.status_code
                        if response.status_code < 400:
                            span.set_attribute("attempts", attempt)
                            span.set_attribute("success", True)
                            logger.info(
                                "webhook_notification_sent",
                                url=config.url,
                                event_type=event_type,
                                status_code=response.status_code,
                                attempts=attempt,
                                duration_ms=int((time.monotonic() - start) * 1000),
                            )
                            return WebhookNotificationResult(
                                success=True,
                                status_code=response.status_code,
                                url=config.url,
                                attempts=attempt,
                            )
                        if response.status_code < 500:
                            last_error = f"Client error: {response.status_code}"
                            break
                        last_error = f"Server error: {response.status_code}"

                    if attempt < max_attempts:
                        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                        logger.warning(
                            "webhook_notification_retry",
                            url=config.url,
                            event_type=event_type,
                            error=last_error,
                            attempt=attempt,
                            max_attempts=max_attempts,
                            backoff_seconds=delay,
                        )
                        await asyncio.sleep(delay)

            span.set_attribute("attempts", attempt)
            span.set_attribute("success", False)
            logger.error(
                "webhook_notification_failed",
                url=config.url,
                event_type=event_type,
                status_code=last_status,
                error=last_error,
                attempts=attempt,
            )
            return WebhookNotificationResult(
                success=False,
                status_code=last_status,
                url=config.url,
                error=last_error,
                attempts=attempt,
            )

    async def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Deliver an event to every subscribed webhook concurrently."""
        targets = self.subscribers(event_type)
        if not targets:
            logger.debug("webhook_skipped", event_type=event_type, reason="no_subscribers")
            return []
        return list(
            await asyncio.gather(*(self.notify(c, event_type, event_data) for c in targets))
        )

    def send(self, event_type: str, event_data: dict[str, Any]) -> list[WebhookNotificationResult]:
        """Synchronous wrapper used by the controller."""
        if not self.subscribers(event_type):
            return []
        return asyncio.run(self.notify_all(event_type, event_data))


__all__ = ["BACKOFF_BASE_SECONDS", "WebhookNotificationResult", "WebhookNotifier"]

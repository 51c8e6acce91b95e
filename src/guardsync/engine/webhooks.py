"""Webhook delivery subsystem.

This module provides:
- Webhook subscription management with generated signing secrets
- Event fan-out into one frozen-payload delivery per subscriber
- Signed HTTP delivery with bounded exponential backoff
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from guardsync.core.errors import WebhookNotFound

if TYPE_CHECKING:
    from guardsync.server.database import Database
    from guardsync.server.models import Webhook, WebhookDelivery

logger = logging.getLogger(__name__)

# Delay before attempt n+1 after n failed attempts
RETRY_SCHEDULE: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
    timedelta(hours=4),
    timedelta(hours=24),
)
MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT = 10.0  # seconds

SIGNATURE_HEADER = "X-GuardSync-Signature"
EVENT_HEADER = "X-GuardSync-Event"
DELIVERY_HEADER = "X-GuardSync-Delivery"
TEST_EVENT = "test"


def retry_delay(failed_attempts: int) -> timedelta | None:
    """Delay before the next attempt.

    Args:
        failed_attempts: Number of failed attempts so far (>= 1).

    Returns:
        The backoff delay, or None once the attempt ceiling is reached.
    """
    if failed_attempts >= MAX_ATTEMPTS:
        return None
    index = min(max(failed_attempts, 1), len(RETRY_SCHEDULE)) - 1
    return RETRY_SCHEDULE[index]


def sign_payload(secret: str, payload: str) -> str:
    """HMAC-SHA256 signature header value for a payload."""
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(event: str, data: Any, timestamp: datetime | None = None) -> str:
    """Serialize an event into the exact body that will be POSTed."""
    timestamp = timestamp or datetime.now(UTC)
    body = {"event": event, "timestamp": timestamp.isoformat(), "data": data}
    return json.dumps(body, sort_keys=True, default=str)


@dataclass(frozen=True)
class AttemptResult:
    success: bool
    response_code: int | None = None
    error: str | None = None


class WebhookService:
    """Manages webhooks and delivers events to them.

    Deliveries are created due immediately; ``process_due`` (run by the
    scheduler) performs the attempts so event publishers never wait on
    subscriber endpoints.
    """

    def __init__(
        self,
        db: Database,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            db: Database instance.
            timeout: HTTP timeout for one delivery attempt in seconds.
            transport: Optional httpx transport (used to stub endpoints).
        """
        self._db = db
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    # === Subscriptions ===

    def create_webhook(self, family_id: str, url: str, events: list[str]) -> Webhook:
        """Subscribe a URL to events, generating its signing secret."""
        secret = secrets.token_hex(32)
        webhook = self._db.create_webhook(family_id, url, secret, sorted(set(events)))
        logger.info("Webhook %s created for family %s: %s", webhook.id, family_id, events)
        return webhook

    def get_webhook(self, webhook_id: str) -> Webhook:
        webhook = self._db.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFound(f"Webhook not found: {webhook_id}")
        return webhook

    def update_webhook(
        self,
        webhook_id: str,
        url: str | None = None,
        events: list[str] | None = None,
        active: bool | None = None,
    ) -> Webhook:
        return self._db.update_webhook(
            webhook_id,
            url=url,
            events=sorted(set(events)) if events is not None else None,
            active=active,
        )

    def delete_webhook(self, webhook_id: str) -> None:
        self._db.delete_webhook(webhook_id)
        logger.info("Webhook %s deleted", webhook_id)

    # === Delivery ===

    def publish(self, family_id: str, event: str, data: Any) -> list[WebhookDelivery]:
        """Fan an event out to every subscribed webhook of a family.

        Returns:
            The created deliveries (one per subscriber), all due now.
        """
        webhooks = self._db.list_subscribed_webhooks(family_id, event)
        if not webhooks:
            logger.debug("No webhooks subscribed to %s for family %s", event, family_id)
            return []
        now = datetime.now(UTC)
        payload = build_payload(event, data, now)
        deliveries = self._db.create_deliveries([w.id for w in webhooks], event, payload, now)
        logger.info("Queued %d deliveries for event %s", len(deliveries), event)
        return deliveries

    def process_due(self, now: datetime | None = None, limit: int = 100) -> int:
        """Attempt every delivery that is due.

        Returns:
            Number of deliveries attempted.
        """
        now = now or datetime.now(UTC)
        due = self._db.list_due_deliveries(now, MAX_ATTEMPTS, limit)
        for delivery in due:
            try:
                self.attempt(delivery)
            except Exception:
                logger.exception("Error attempting webhook delivery %s", delivery.id)
        return len(due)

    def attempt(self, delivery: WebhookDelivery, schedule_retry: bool = True) -> WebhookDelivery:
        """POST one delivery and record the outcome.

        Args:
            delivery: Delivery to attempt.
            schedule_retry: Schedule a backoff retry on failure.

        Returns:
            The updated delivery.
        """
        webhook = self.get_webhook(delivery.webhook_id)
        result = self._post(webhook, delivery)

        failed_attempts = delivery.attempts + 1
        next_retry_at = None
        failed_permanently = False
        if not result.success and schedule_retry:
            delay = retry_delay(failed_attempts)
            if delay is None:
                failed_permanently = True
                logger.error(
                    "Webhook delivery %s permanently failed after %d attempts: %s",
                    delivery.id,
                    failed_attempts,
                    result.error,
                )
            else:
                next_retry_at = datetime.now(UTC) + delay
                logger.warning(
                    "Webhook delivery %s failed (attempt %d), retrying in %s: %s",
                    delivery.id,
                    failed_attempts,
                    delay,
                    result.error,
                )
        elif result.success:
            logger.info("Webhook delivery %s succeeded (%s)", delivery.id, result.response_code)

        return self._db.record_delivery_attempt(
            delivery.id,
            success=result.success,
            response_code=result.response_code,
            error=result.error,
            next_retry_at=next_retry_at,
            failed_permanently=failed_permanently,
        )

    def send_test(self, webhook_id: str) -> WebhookDelivery:
        """Deliver a test event right away, without retries."""
        webhook = self.get_webhook(webhook_id)
        now = datetime.now(UTC)
        payload = build_payload(TEST_EVENT, {"message": "webhook test", "webhook_id": webhook.id}, now)
        (delivery,) = self._db.create_deliveries([webhook.id], TEST_EVENT, payload, None)
        return self.attempt(delivery, schedule_retry=False)

    def _post(self, webhook: Webhook, delivery: WebhookDelivery) -> AttemptResult:
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: delivery.event,
            DELIVERY_HEADER: delivery.id,
            SIGNATURE_HEADER: sign_payload(webhook.secret, delivery.payload),
        }
        try:
            response = self._client.post(webhook.url, content=delivery.payload, headers=headers)
        except httpx.HTTPError as e:
            return AttemptResult(success=False, error=f"{type(e).__name__}: {e}")
        if response.is_success:
            return AttemptResult(success=True, response_code=response.status_code)
        return AttemptResult(
            success=False,
            response_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )

    # === Inspection ===

    def list_deliveries(self, webhook_id: str, limit: int = 50) -> list[WebhookDelivery]:
        self.get_webhook(webhook_id)
        return self._db.list_deliveries(webhook_id, limit)

    def list_failed(self, family_id: str | None = None) -> list[WebhookDelivery]:
        return self._db.list_failed_deliveries(family_id)

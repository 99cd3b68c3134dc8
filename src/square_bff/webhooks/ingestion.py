"""
Webhook ingestion engine.

A delivery is verified against its signature, stored as ``pending``,
dispatched to the handler registered for its type, and finally marked
``processed`` or ``failed``. Every delivery gets its own record, including
redeliveries of an event id that was already seen. A delivery's final status is
written to its own record; out-of-band status lookups by event id resolve to
the most recent record.
"""

import datetime
import json
import logging
import secrets
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError

from square_bff.core.audit import log_webhook_rejected
from square_bff.core.errors import HandlerFailure, MalformedPayload, SignatureInvalid
from square_bff.core.models import WebhookEvent, WebhookStatus, epoch_seconds
from square_bff.storage.base import WebhookEventStore
from square_bff.webhooks.handlers import WebhookEnvelope, WebhookHandlerRegistry
from square_bff.webhooks.signature import verify_signature

logger = logging.getLogger("webhooks")

DEFAULT_EVENT_TTL_DAYS = 90
MAX_ERROR_MESSAGE_LENGTH = 1000


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def generate_webhook_id(now: datetime.datetime) -> str:
    """``webhook-<timestamp>-<random>`` identifier for a stored delivery."""
    timestamp = now.astimezone(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return f"webhook-{timestamp}-{secrets.token_hex(6)}"


class WebhookReceipt(BaseModel):
    """Acknowledgement of an accepted delivery."""

    webhook_id: str
    event_id: str
    event_type: str
    status: WebhookStatus
    handled: bool


class WebhookIngestionEngine:
    """Verifies, stores and dispatches webhook deliveries."""

    def __init__(
        self,
        signing_key: str,
        store: WebhookEventStore,
        registry: WebhookHandlerRegistry,
        *,
        ttl_days: int = DEFAULT_EVENT_TTL_DAYS,
        clock: Callable[[], datetime.datetime] = _utc_now,
    ) -> None:
        self._signing_key = signing_key
        self._store = store
        self._registry = registry
        self._ttl = datetime.timedelta(days=ttl_days)
        self._clock = clock

    def receive(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookReceipt:
        """
        Ingest one webhook delivery.

        Args:
            raw_body (bytes): The exact request body as received.
            signature_header (str | None): Value of the signature header.

        Returns:
            WebhookReceipt: The stored record's id and final status.

        Raises:
            SignatureInvalid: Missing or wrong signature. Nothing is stored.
            MalformedPayload: Body is not a valid event envelope. Nothing is stored.
            StorageError: The event could not be stored.
            HandlerFailure: The handler raised; the record is marked failed.
        """
        if not verify_signature(self._signing_key, raw_body, signature_header):
            log_webhook_rejected(
                {"reason": "missing_signature" if not signature_header else "bad_signature"}
            )
            raise SignatureInvalid()

        envelope = self._parse(raw_body)
        logger.info(
            "Processing webhook event: %s, type: %s, merchant: %s",
            envelope.event_id,
            envelope.type,
            envelope.merchant_id,
        )

        event = self._store_event(envelope)

        handler = self._registry.get(envelope.type)
        if handler is None:
            logger.info("Unhandled webhook event type: %s", envelope.type)
        else:
            try:
                handler(envelope)
            except Exception as e:
                logger.error("Error processing webhook event %s: %s", envelope.event_id, e)
                self._finish(event, WebhookStatus.FAILED, str(e) or type(e).__name__)
                raise HandlerFailure(
                    f"Handler for {envelope.type} failed",
                    webhook_id=event.id,
                    event_id=envelope.event_id,
                ) from e

        self._finish(event, WebhookStatus.PROCESSED)
        logger.info("Successfully processed webhook event: %s", envelope.event_id)
        return WebhookReceipt(
            webhook_id=event.id,
            event_id=envelope.event_id,
            event_type=envelope.type,
            status=WebhookStatus.PROCESSED,
            handled=handler is not None,
        )

    def _parse(self, raw_body: bytes) -> WebhookEnvelope:
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            logger.error("Error parsing webhook body: %s", e)
            raise MalformedPayload("Invalid JSON format") from e
        if not isinstance(body, dict):
            raise MalformedPayload("Webhook body must be a JSON object")
        try:
            return WebhookEnvelope.model_validate(body)
        except ValidationError as e:
            logger.error("Invalid webhook payload, keys received: %s", sorted(body))
            raise MalformedPayload("Invalid event payload structure") from e

    def _store_event(self, envelope: WebhookEnvelope) -> WebhookEvent:
        now = self._clock()
        event = WebhookEvent(
            id=generate_webhook_id(now),
            event_type=envelope.type,
            merchant_id=envelope.merchant_id,
            event_id=envelope.event_id,
            payload=json.dumps(envelope.data, separators=(",", ":"), sort_keys=True),
            status=WebhookStatus.PENDING,
            created_at=now,
            ttl=epoch_seconds(now + self._ttl),
        )
        self._store.insert(event)
        logger.info("Stored webhook event: %s", event.id)
        return event

    def _finish(
        self, event: WebhookEvent, status: WebhookStatus, error_message: Optional[str] = None
    ) -> None:
        """Set the final status of the record stored for this delivery. Never raises."""
        if error_message:
            error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH]
        try:
            self._store.set_status(event.id, status, self._clock(), error_message)
            logger.info("Updated webhook %s status to %s", event.id, status.value)
        except Exception as e:
            logger.error("Error updating webhook status for %s: %s", event.id, e)

    def update_status_by_event_id(
        self,
        event_id: str,
        status: WebhookStatus,
        error_message: Optional[str] = None,
    ) -> Optional[WebhookEvent]:
        """
        Set the status of the most recent delivery of ``event_id``.

        Looks the record up through the event-id index and falls back to a full
        scan when the index has nothing. Never raises: failures are logged and
        ``None`` is returned, so a bookkeeping problem cannot undo processing
        that already succeeded.
        """
        try:
            record = self._store.query_latest_by_event_id(event_id)
            if record is None:
                logger.info(
                    "No webhook found with eventId %s in index, falling back to scan", event_id
                )
                record = self._store.scan_latest_by_event_id(event_id)
            if record is None:
                logger.warning("No webhook found with eventId: %s", event_id)
                return None

            processed_at = self._clock()
            if error_message:
                error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH]
            self._store.set_status(record.id, status, processed_at, error_message)
            logger.info("Updated webhook %s status to %s", record.id, status.value)
            return record.model_copy(
                update={
                    "status": status,
                    "processed_at": processed_at,
                    "error_message": error_message or record.error_message,
                }
            )
        except Exception as e:
            logger.error("Error updating webhook status for eventId %s: %s", event_id, e)
            return None

"""
Webhook handler registry and the default Square event handlers.

Handlers are plain callables registered against an event-type string. New
event types are supported by registering another handler; the ingestion engine
does not change.
"""

import logging
from typing import Any, Callable, Optional

from pydantic import AliasChoices, BaseModel, Field

from square_bff.core.credentials import CredentialRepository

logger = logging.getLogger("webhooks")


class WebhookEnvelope(BaseModel):
    """The fields of a Square webhook body the backend relies on."""

    type: str = Field(..., min_length=1, validation_alias=AliasChoices("type", "event_type"))
    merchant_id: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def data_object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


WebhookHandler = Callable[[WebhookEnvelope], None]


class WebhookHandlerRegistry:
    """Mapping from event type to handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        """Register ``handler`` for ``event_type``, replacing any previous one."""
        if event_type in self._handlers:
            logger.info("Replacing webhook handler for %s", event_type)
        self._handlers[event_type] = handler

    def handler(self, event_type: str) -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: WebhookHandler) -> WebhookHandler:
            self.register(event_type, func)
            return func

        return decorator

    def get(self, event_type: str) -> Optional[WebhookHandler]:
        return self._handlers.get(event_type)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)


def handle_catalog_version_updated(event: WebhookEnvelope) -> None:
    """Record that a merchant's catalog changed."""
    catalog_version = event.data_object.get("catalog_version") or {}
    logger.info(
        "Catalog updated for merchant %s at %s",
        event.merchant_id,
        catalog_version.get("updated_at", "N/A"),
    )


def handle_inventory_count_updated(event: WebhookEnvelope) -> None:
    """Record inventory count changes for a merchant."""
    counts = event.data_object.get("inventory_counts") or []
    logger.info(
        "Inventory counts updated for merchant %s: %d change(s)",
        event.merchant_id,
        len(counts),
    )


def build_default_registry(credentials: CredentialRepository) -> WebhookHandlerRegistry:
    """Registry with the handlers the backend ships with."""
    registry = WebhookHandlerRegistry()
    registry.register("catalog.version.updated", handle_catalog_version_updated)
    registry.register("inventory.count.updated", handle_inventory_count_updated)

    @registry.handler("oauth.authorization.revoked")
    def handle_authorization_revoked(event: WebhookEnvelope) -> None:
        logger.info("Merchant %s revoked the application's access", event.merchant_id)
        credentials.delete(event.merchant_id)

    return registry

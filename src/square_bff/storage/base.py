"""
Store interfaces for OAuth state, merchant credentials and webhook events.

The engines depend only on these interfaces. Production code wires the
SQLAlchemy implementations from :mod:`square_bff.storage.sql`; tests may swap
in doubles. Implementations must provide their atomicity guarantees through
the backing store (unique keys, conditional writes), never through
process-local locks, so that several application instances can share them.
"""

import datetime
from abc import ABC, abstractmethod
from typing import Optional

from square_bff.core.models import (
    MerchantCredential,
    PendingAuthorization,
    WebhookEvent,
    WebhookStatus,
)


class StateStore(ABC):
    """Pending OAuth authorizations keyed by state."""

    @abstractmethod
    def put(self, pending: PendingAuthorization, ttl: int) -> None:
        """Insert a pending authorization; raise AlreadyExists if the state is taken."""

    @abstractmethod
    def take(self, state: str) -> Optional[PendingAuthorization]:
        """
        Atomically read and delete the entry for ``state``.

        Exactly one concurrent caller receives the entry; every other caller,
        and any caller after it, receives ``None``.
        """

    @abstractmethod
    def purge_expired(self, now_epoch: int) -> int:
        """Delete entries whose ttl has passed; return how many were removed."""


class CredentialStore(ABC):
    """Merchant credential records keyed by merchant id."""

    @abstractmethod
    def insert(self, credential: MerchantCredential) -> None:
        """Insert a new record; raise AlreadyExists if the merchant already has one."""

    @abstractmethod
    def replace_tokens(
        self,
        merchant_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime.datetime,
        updated_at: datetime.datetime,
        ttl: int,
    ) -> MerchantCredential:
        """
        Overwrite the token triple and bookkeeping fields in one write.

        Raises NotFound, without writing, if no record exists.
        """

    @abstractmethod
    def get(self, merchant_id: str) -> Optional[MerchantCredential]:
        """Return the record for a merchant, if any."""

    @abstractmethod
    def list(self, limit: int) -> list[MerchantCredential]:
        """Return up to ``limit`` records ordered by merchant id."""

    @abstractmethod
    def delete(self, merchant_id: str) -> bool:
        """Delete a record; return whether one existed."""


class WebhookEventStore(ABC):
    """Webhook delivery records keyed by generated id, indexed by event id."""

    @abstractmethod
    def insert(self, event: WebhookEvent) -> None:
        """Insert a new delivery record."""

    @abstractmethod
    def get(self, webhook_id: str) -> Optional[WebhookEvent]:
        """Return a record by its generated id."""

    @abstractmethod
    def query_latest_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        """Most recent record for ``event_id`` using the secondary index."""

    @abstractmethod
    def scan_latest_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        """Most recent record for ``event_id`` found by scanning every record."""

    @abstractmethod
    def set_status(
        self,
        webhook_id: str,
        status: WebhookStatus,
        processed_at: datetime.datetime,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a processing outcome for one delivery."""

    @abstractmethod
    def list(self, limit: int) -> list[WebhookEvent]:
        """Return up to ``limit`` records, newest first."""

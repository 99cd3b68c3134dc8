"""
Token persistence for Square merchant credentials.

This layer owns every write to merchant credentials. It stamps timestamps and
the storage TTL and guarantees that the access token, refresh token and
expiry are always written together.
"""

import datetime
import logging
from typing import Callable, Optional

from square_bff.core.errors import AlreadyExists, NotFound
from square_bff.core.models import MerchantCredential, epoch_seconds
from square_bff.storage.base import CredentialStore

logger = logging.getLogger("credentials")

DEFAULT_CREDENTIAL_TTL_DAYS = 365
DEFAULT_LIST_LIMIT = 50


def utc_now() -> datetime.datetime:
    """Current time in UTC."""
    return datetime.datetime.now(datetime.UTC)


class CredentialRepository:
    """Create, update, read and delete merchant credentials."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        environment: str = "sandbox",
        ttl_days: int = DEFAULT_CREDENTIAL_TTL_DAYS,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._store = store
        self._environment = environment
        self._ttl = datetime.timedelta(days=ttl_days)
        self._clock = clock

    def create(
        self,
        merchant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime.datetime,
    ) -> MerchantCredential:
        """
        Store credentials for a merchant seen for the first time.

        Raises:
            AlreadyExists: If the merchant already has credentials; the stored
                record is left untouched.
        """
        now = self._clock()
        credential = MerchantCredential(
            merchant_id=merchant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            environment=self._environment,
            created_at=now,
            updated_at=now,
            ttl=epoch_seconds(now + self._ttl),
        )
        self._store.insert(credential)
        logger.info("Created credentials for merchant: %s", merchant_id)
        return credential

    def update(
        self,
        merchant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime.datetime,
    ) -> MerchantCredential:
        """
        Replace the token triple of an existing merchant.

        Raises:
            NotFound: If the merchant has no credentials; nothing is written.
        """
        now = self._clock()
        credential = self._store.replace_tokens(
            merchant_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=now,
            ttl=epoch_seconds(now + self._ttl),
        )
        logger.info("Updated credentials for merchant: %s", merchant_id)
        return credential

    def upsert(
        self,
        merchant_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime.datetime,
    ) -> tuple[MerchantCredential, bool]:
        """
        Create the merchant's credentials, or update them if they already exist.

        Returns:
            tuple[MerchantCredential, bool]: The stored credentials and whether
            they were newly created.
        """
        try:
            return self.create(merchant_id, access_token, refresh_token, expires_at), True
        except AlreadyExists:
            logger.info("Merchant %s already connected, refreshing tokens", merchant_id)
        try:
            return self.update(merchant_id, access_token, refresh_token, expires_at), False
        except NotFound:
            # Deleted between the two writes (e.g. a concurrent revocation).
            return self.create(merchant_id, access_token, refresh_token, expires_at), True

    def get(self, merchant_id: str) -> Optional[MerchantCredential]:
        return self._store.get(merchant_id)

    def require(self, merchant_id: str) -> MerchantCredential:
        """Return the merchant's credentials or raise NotFound."""
        credential = self._store.get(merchant_id)
        if credential is None:
            raise NotFound(f"No credentials stored for merchant {merchant_id}")
        return credential

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[MerchantCredential]:
        return self._store.list(limit)

    def delete(self, merchant_id: str) -> None:
        """Delete a merchant's credentials. Deleting an absent record is not an error."""
        if self._store.delete(merchant_id):
            logger.info("Deleted credentials for merchant: %s", merchant_id)
        else:
            logger.info("No credentials to delete for merchant: %s", merchant_id)

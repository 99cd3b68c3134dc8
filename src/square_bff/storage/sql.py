"""SQLAlchemy implementations of the store interfaces."""

import datetime
import logging
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from square_bff.core.errors import AlreadyExists, NotFound, StorageError
from square_bff.core.models import (
    MerchantCredential,
    MerchantCredentialRecord,
    OAuthStateRecord,
    PendingAuthorization,
    WebhookEvent,
    WebhookEventRecord,
    WebhookStatus,
)
from square_bff.storage.base import CredentialStore, StateStore, WebhookEventStore

logger = logging.getLogger("storage")

SCAN_BATCH_SIZE = 200


class SqlStateStore(StateStore):
    """Pending authorizations in the ``oauth_states`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def put(self, pending: PendingAuthorization, ttl: int) -> None:
        record = OAuthStateRecord(
            state=pending.state,
            code_verifier=pending.code_verifier,
            redirect_uri=pending.redirect_uri,
            created_at=pending.created_at,
            ttl=ttl,
        )
        try:
            with self._session_factory() as session, session.begin():
                session.add(record)
        except IntegrityError as e:
            raise AlreadyExists("OAuth state already registered") from e
        except SQLAlchemyError as e:
            logger.error("Error storing OAuth state: %s", e)
            raise StorageError("Unable to store OAuth state") from e

    def take(self, state: str) -> Optional[PendingAuthorization]:
        try:
            with self._session_factory() as session, session.begin():
                record = session.get(OAuthStateRecord, state)
                if record is None:
                    return None
                pending = PendingAuthorization.from_record(record)
                # The row count decides which concurrent caller owns the state.
                result = session.execute(
                    delete(OAuthStateRecord)
                    .where(OAuthStateRecord.state == state)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                return pending
        except SQLAlchemyError as e:
            logger.error("Error consuming OAuth state: %s", e)
            raise StorageError("Unable to validate OAuth state") from e

    def purge_expired(self, now_epoch: int) -> int:
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    delete(OAuthStateRecord)
                    .where(OAuthStateRecord.ttl <= now_epoch)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error("Error purging OAuth states: %s", e)
            raise StorageError("Unable to purge OAuth states") from e


class SqlCredentialStore(CredentialStore):
    """Merchant credentials in the ``merchant_credentials`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def insert(self, credential: MerchantCredential) -> None:
        record = MerchantCredentialRecord(**credential.model_dump())
        try:
            with self._session_factory() as session, session.begin():
                session.add(record)
        except IntegrityError as e:
            raise AlreadyExists(
                f"Credentials already exist for merchant {credential.merchant_id}"
            ) from e
        except SQLAlchemyError as e:
            logger.error("Error creating credentials for %s: %s", credential.merchant_id, e)
            raise StorageError("Unable to store merchant credentials") from e

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
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    update(MerchantCredentialRecord)
                    .where(MerchantCredentialRecord.merchant_id == merchant_id)
                    .values(
                        access_token=access_token,
                        refresh_token=refresh_token,
                        expires_at=expires_at,
                        updated_at=updated_at,
                        ttl=ttl,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise NotFound(f"No credentials stored for merchant {merchant_id}")
                record = session.get(MerchantCredentialRecord, merchant_id, populate_existing=True)
                return MerchantCredential.from_record(record)
        except SQLAlchemyError as e:
            logger.error("Error updating credentials for %s: %s", merchant_id, e)
            raise StorageError("Unable to update merchant credentials") from e

    def get(self, merchant_id: str) -> Optional[MerchantCredential]:
        try:
            with self._session_factory() as session:
                record = session.get(MerchantCredentialRecord, merchant_id)
                return MerchantCredential.from_record(record) if record else None
        except SQLAlchemyError as e:
            logger.error("Error reading credentials for %s: %s", merchant_id, e)
            raise StorageError("Unable to read merchant credentials") from e

    def list(self, limit: int) -> list[MerchantCredential]:
        try:
            with self._session_factory() as session:
                records = session.scalars(
                    select(MerchantCredentialRecord)
                    .order_by(MerchantCredentialRecord.merchant_id)
                    .limit(limit)
                ).all()
                return [MerchantCredential.from_record(record) for record in records]
        except SQLAlchemyError as e:
            logger.error("Error listing credentials: %s", e)
            raise StorageError("Unable to list merchant credentials") from e

    def delete(self, merchant_id: str) -> bool:
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    delete(MerchantCredentialRecord)
                    .where(MerchantCredentialRecord.merchant_id == merchant_id)
                    .execution_options(synchronize_session=False)
                )
                return bool(result.rowcount)
        except SQLAlchemyError as e:
            logger.error("Error deleting credentials for %s: %s", merchant_id, e)
            raise StorageError("Unable to delete merchant credentials") from e


class SqlWebhookEventStore(WebhookEventStore):
    """Webhook deliveries in the ``webhook_events`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def insert(self, event: WebhookEvent) -> None:
        record = WebhookEventRecord(**{**event.model_dump(), "status": event.status.value})
        try:
            with self._session_factory() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as e:
            logger.error("Error storing webhook event %s: %s", event.event_id, e)
            raise StorageError("Unable to store webhook event") from e

    def get(self, webhook_id: str) -> Optional[WebhookEvent]:
        try:
            with self._session_factory() as session:
                record = session.get(WebhookEventRecord, webhook_id)
                return WebhookEvent.from_record(record) if record else None
        except SQLAlchemyError as e:
            logger.error("Error reading webhook %s: %s", webhook_id, e)
            raise StorageError("Unable to read webhook event") from e

    def query_latest_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        try:
            with self._session_factory() as session:
                record = session.scalars(
                    select(WebhookEventRecord)
                    .where(WebhookEventRecord.event_id == event_id)
                    .order_by(WebhookEventRecord.created_at.desc(), WebhookEventRecord.id.desc())
                    .limit(1)
                ).first()
                return WebhookEvent.from_record(record) if record else None
        except SQLAlchemyError as e:
            logger.error("Error querying webhook by event id %s: %s", event_id, e)
            raise StorageError("Unable to query webhook events") from e

    def scan_latest_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        latest: Optional[WebhookEventRecord] = None
        try:
            with self._session_factory() as session:
                for record in session.scalars(
                    select(WebhookEventRecord).execution_options(yield_per=SCAN_BATCH_SIZE)
                ):
                    if record.event_id != event_id:
                        continue
                    if latest is None or (record.created_at, record.id) > (
                        latest.created_at,
                        latest.id,
                    ):
                        latest = record
                return WebhookEvent.from_record(latest) if latest else None
        except SQLAlchemyError as e:
            logger.error("Error scanning webhooks for event id %s: %s", event_id, e)
            raise StorageError("Unable to scan webhook events") from e

    def set_status(
        self,
        webhook_id: str,
        status: WebhookStatus,
        processed_at: datetime.datetime,
        error_message: Optional[str] = None,
    ) -> None:
        values: dict = {"status": status.value, "processed_at": processed_at}
        if error_message:
            values["error_message"] = error_message
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    update(WebhookEventRecord)
                    .where(WebhookEventRecord.id == webhook_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise NotFound(f"Webhook event {webhook_id} not found")
        except SQLAlchemyError as e:
            logger.error("Error updating webhook %s: %s", webhook_id, e)
            raise StorageError("Unable to update webhook event") from e

    def list(self, limit: int) -> list[WebhookEvent]:
        try:
            with self._session_factory() as session:
                records = session.scalars(
                    select(WebhookEventRecord)
                    .order_by(WebhookEventRecord.created_at.desc(), WebhookEventRecord.id.desc())
                    .limit(limit)
                ).all()
                return [WebhookEvent.from_record(record) for record in records]
        except SQLAlchemyError as e:
            logger.error("Error listing webhook events: %s", e)
            raise StorageError("Unable to list webhook events") from e

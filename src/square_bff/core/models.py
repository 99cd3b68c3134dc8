"""
Database models for OAuth state, merchant credentials and webhook events,
plus the pydantic domain models handed between layers.
"""

import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from square_bff.core.database import Base


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive timestamps read back from databases without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def epoch_seconds(value: datetime.datetime) -> int:
    """Whole epoch seconds for a timestamp, used for TTL attributes."""
    return int(value.timestamp())


class OAuthStateRecord(Base):
    """
    An in-flight authorization attempt keyed by its state token.

    Attributes:
        state (str): Opaque anti-CSRF token; primary key, so at most one live row.
        code_verifier (str | None): PKCE verifier, absent for the web flow.
        redirect_uri (str | None): Client URI that receives the session.
        created_at (datetime): When the attempt started.
        ttl (int): Epoch seconds after which the row is stale.
    """

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    code_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redirect_uri: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl: Mapped[int] = mapped_column(Integer, nullable=False, index=True)


class MerchantCredentialRecord(Base):
    """
    Square OAuth credentials for one merchant.

    Attributes:
        merchant_id (str): Square merchant id; primary key.
        access_token (str): Square OAuth access token.
        refresh_token (str): Square OAuth refresh token.
        expires_at (datetime): When the access token expires.
        environment (str): 'sandbox' or 'production'.
        created_at (datetime): First successful authorization.
        updated_at (datetime): Last token write.
        ttl (int): Epoch seconds for storage-layer eviction.
    """

    __tablename__ = "merchant_credentials"

    merchant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    environment: Mapped[str] = mapped_column(String(16), default="sandbox", nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl: Mapped[int] = mapped_column(Integer, nullable=False)


class WebhookEventRecord(Base):
    """A received webhook delivery and its processing status."""

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ttl: Mapped[int] = mapped_column(Integer, nullable=False)


class PendingAuthorization(BaseModel):
    """An authorization attempt waiting for its callback."""

    state: str
    code_verifier: Optional[str] = Field(None, repr=False)
    redirect_uri: Optional[str] = None
    created_at: datetime.datetime

    def is_expired(self, now: datetime.datetime, ttl_seconds: int) -> bool:
        """Whether the attempt is older than the allowed window."""
        return now >= self.created_at + datetime.timedelta(seconds=ttl_seconds)

    @classmethod
    def from_record(cls, record: OAuthStateRecord) -> "PendingAuthorization":
        return cls(
            state=record.state,
            code_verifier=record.code_verifier,
            redirect_uri=record.redirect_uri,
            created_at=ensure_utc(record.created_at),
        )


class MerchantCredential(BaseModel):
    """Square OAuth credentials owned by the token persistence layer."""

    merchant_id: str
    access_token: str = Field(..., repr=False)
    refresh_token: str = Field(..., repr=False)
    expires_at: datetime.datetime
    environment: str = "sandbox"
    created_at: datetime.datetime
    updated_at: datetime.datetime
    ttl: int

    @classmethod
    def from_record(cls, record: MerchantCredentialRecord) -> "MerchantCredential":
        return cls(
            merchant_id=record.merchant_id,
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=ensure_utc(record.expires_at),
            environment=record.environment,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
            ttl=record.ttl,
        )


class WebhookStatus(str, Enum):
    """Processing status of a stored webhook event."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEvent(BaseModel):
    """A stored webhook delivery."""

    id: str
    event_type: str
    merchant_id: str
    event_id: str
    payload: str
    status: WebhookStatus = WebhookStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime.datetime
    processed_at: Optional[datetime.datetime] = None
    ttl: int

    @classmethod
    def from_record(cls, record: WebhookEventRecord) -> "WebhookEvent":
        return cls(
            id=record.id,
            event_type=record.event_type,
            merchant_id=record.merchant_id,
            event_id=record.event_id,
            payload=record.payload,
            status=WebhookStatus(record.status),
            error_message=record.error_message,
            created_at=ensure_utc(record.created_at),
            processed_at=ensure_utc(record.processed_at),
            ttl=record.ttl,
        )

"""Shared fixtures for the Square BFF tests."""

import datetime
from typing import Iterator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from square_bff.core.credentials import CredentialRepository
from square_bff.core.database import create_db_engine, create_session_factory, init_db
from square_bff.core.dependencies import get_oauth_provider
from square_bff.core.main import create_app
from square_bff.core.models import WebhookEvent
from square_bff.core.settings import SquareSettings
from square_bff.oauth.pkce import PKCEStateStore
from square_bff.oauth.provider import MerchantIdentity, OAuthProvider, ProviderError, TokenGrant
from square_bff.storage.sql import SqlCredentialStore, SqlStateStore, SqlWebhookEventStore

WEBHOOK_KEY = "test_webhook_signature_key"
CLIENT_CALLBACK = "http://localhost:3000/auth/callback"
START = datetime.datetime(2026, 3, 1, 12, 0, 0, tzinfo=datetime.UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime.datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakeOAuthProvider(OAuthProvider):
    """Scriptable stand-in for Square's OAuth endpoints."""

    def __init__(self, merchant_id: str = "MERCHANT_1") -> None:
        self.merchant_id = merchant_id
        self.business_name = "Test Business"
        self.exchange_error: Optional[ProviderError] = None
        self.identity_error: Optional[ProviderError] = None
        self.refresh_error: Optional[ProviderError] = None
        self.revoke_error: Optional[ProviderError] = None
        self.exchange_calls: list[dict] = []
        self.refresh_calls: list[str] = []
        self.revoke_calls: list[tuple[str, str]] = []
        self._issued = 0

    def _grant(self) -> TokenGrant:
        self._issued += 1
        return TokenGrant(
            access_token=f"square_access_{self._issued}",
            refresh_token=f"square_refresh_{self._issued}",
            expires_at=START + datetime.timedelta(days=30),
            merchant_id=self.merchant_id,
        )

    def exchange_code(
        self, code: str, redirect_uri: Optional[str], code_verifier: Optional[str]
    ) -> TokenGrant:
        self.exchange_calls.append(
            {"code": code, "redirect_uri": redirect_uri, "code_verifier": code_verifier}
        )
        if self.exchange_error:
            raise self.exchange_error
        return self._grant()

    def fetch_identity(self, access_token: str) -> MerchantIdentity:
        if self.identity_error:
            raise self.identity_error
        return MerchantIdentity(merchant_id=self.merchant_id, business_name=self.business_name)

    def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        return self._grant()

    def revoke(self, access_token: str, merchant_id: str) -> None:
        self.revoke_calls.append((access_token, merchant_id))
        if self.revoke_error:
            raise self.revoke_error


class LaggingIndexWebhookStore(SqlWebhookEventStore):
    """Webhook store whose event-id index has not caught up with recent writes."""

    def query_latest_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        return None


@pytest.fixture
def settings() -> SquareSettings:
    """Settings for testing."""
    return SquareSettings(
        _env_file=None,
        square_app_id="sq0idp-test-app",
        square_app_secret="sq0csp-test-secret",
        environment="sandbox",
        square_redirect_uri="http://localhost:8000/square/oauth/callback",
        redirect_uri_allow_list=[CLIENT_CALLBACK],
        webhook_signature_key=WEBHOOK_KEY,
        jwt_secret_key="test_secret_key",
        jwt_algorithm="HS256",
        jwt_access_token_expire_minutes=30,
        database_url="sqlite://",
    )


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory database with every table created."""
    db_engine = create_db_engine("sqlite://")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def state_store(session_factory: sessionmaker[Session], clock: FrozenClock) -> PKCEStateStore:
    return PKCEStateStore(SqlStateStore(session_factory), clock=clock)


@pytest.fixture
def credential_store(session_factory: sessionmaker[Session]) -> SqlCredentialStore:
    return SqlCredentialStore(session_factory)


@pytest.fixture
def credentials(credential_store: SqlCredentialStore, clock: FrozenClock) -> CredentialRepository:
    return CredentialRepository(credential_store, environment="sandbox", clock=clock)


@pytest.fixture
def webhook_store(session_factory: sessionmaker[Session]) -> SqlWebhookEventStore:
    return SqlWebhookEventStore(session_factory)


@pytest.fixture
def provider() -> FakeOAuthProvider:
    return FakeOAuthProvider()


@pytest.fixture
def app(settings: SquareSettings, engine: Engine, provider: FakeOAuthProvider) -> FastAPI:
    """Application wired to the in-memory database and the fake provider."""
    application = create_app(settings, engine)
    application.dependency_overrides[get_oauth_provider] = lambda: provider
    return application


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    """Test client that runs the application lifespan and does not follow redirects."""
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client

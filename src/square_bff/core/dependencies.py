"""
FastAPI dependencies for the Square backend-for-frontend.

Stores, the OAuth provider and the engines are assembled per request from
the application's settings and session factory, so tests can override any of
them through ``app.dependency_overrides``.
"""

import logging
from functools import lru_cache

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from square_bff.core.auth import create_access_token
from square_bff.core.credentials import CredentialRepository
from square_bff.core.settings import SquareSettings
from square_bff.oauth.exchange import OAuthExchangeEngine
from square_bff.oauth.pkce import PKCEStateStore
from square_bff.oauth.provider import OAuthProvider, SquareOAuthProvider
from square_bff.storage.base import CredentialStore, StateStore, WebhookEventStore
from square_bff.storage.sql import SqlCredentialStore, SqlStateStore, SqlWebhookEventStore
from square_bff.webhooks.handlers import WebhookHandlerRegistry, build_default_registry
from square_bff.webhooks.ingestion import WebhookIngestionEngine

# Setup logger
logger = logging.getLogger("dependencies")


@lru_cache()
def get_settings() -> SquareSettings:
    """
    Get the settings for the application, read once from the environment.
    """
    settings = SquareSettings()
    logger.info("get_settings returning SquareSettings with environment: %s", settings.environment)
    return settings


def get_app_settings(request: Request) -> SquareSettings:
    """Settings the running application was created with."""
    return request.app.state.settings


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Session factory bound to the application's database engine."""
    return request.app.state.session_factory


def get_state_backend(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> StateStore:
    return SqlStateStore(session_factory)


def get_credential_backend(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> CredentialStore:
    return SqlCredentialStore(session_factory)


def get_webhook_backend(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> WebhookEventStore:
    return SqlWebhookEventStore(session_factory)


def get_state_store(
    settings: SquareSettings = Depends(get_app_settings),
    backend: StateStore = Depends(get_state_backend),
) -> PKCEStateStore:
    return PKCEStateStore(backend, ttl_seconds=settings.oauth_state_ttl_seconds)


def get_credential_repository(
    settings: SquareSettings = Depends(get_app_settings),
    backend: CredentialStore = Depends(get_credential_backend),
) -> CredentialRepository:
    return CredentialRepository(
        backend, environment=settings.environment, ttl_days=settings.credential_ttl_days
    )


def get_oauth_provider(settings: SquareSettings = Depends(get_app_settings)) -> OAuthProvider:
    """
    Injection method to get the Square OAuth provider.
    """
    logger.debug("Creating Square OAuth provider with environment: %s", settings.environment)
    return SquareOAuthProvider(settings)


def get_exchange_engine(
    settings: SquareSettings = Depends(get_app_settings),
    state_store: PKCEStateStore = Depends(get_state_store),
    credentials: CredentialRepository = Depends(get_credential_repository),
    provider: OAuthProvider = Depends(get_oauth_provider),
) -> OAuthExchangeEngine:
    return OAuthExchangeEngine(
        settings,
        state_store,
        credentials,
        provider,
        session_issuer=create_access_token,
    )


def get_webhook_registry(
    credentials: CredentialRepository = Depends(get_credential_repository),
) -> WebhookHandlerRegistry:
    return build_default_registry(credentials)


def get_webhook_engine(
    settings: SquareSettings = Depends(get_app_settings),
    backend: WebhookEventStore = Depends(get_webhook_backend),
    registry: WebhookHandlerRegistry = Depends(get_webhook_registry),
) -> WebhookIngestionEngine:
    return WebhookIngestionEngine(
        settings.webhook_signature_key,
        backend,
        registry,
        ttl_days=settings.webhook_event_ttl_days,
    )

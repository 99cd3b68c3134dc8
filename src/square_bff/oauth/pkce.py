"""
PKCE helpers and the store of in-flight authorization attempts.

A state token is issued when an OAuth flow starts and can be consumed exactly
once by the callback. The single-use guarantee comes from the backing store's
atomic read-and-delete, so it holds across processes.
"""

import base64
import datetime
import hashlib
import logging
import secrets
from typing import Callable, Optional

from pydantic import BaseModel

from square_bff.core.audit import log_auth_failure
from square_bff.core.errors import InvalidRequest, InvalidState
from square_bff.core.models import PendingAuthorization, epoch_seconds
from square_bff.storage.base import StateStore

logger = logging.getLogger("pkce")

STATE_TTL_SECONDS = 600
STATE_BYTES = 32
VERIFIER_BYTES = 32


def _urlsafe_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Random anti-CSRF state token."""
    return secrets.token_urlsafe(STATE_BYTES)


def generate_code_verifier() -> str:
    """PKCE code verifier: 32 random bytes, base64url encoded to 43 characters."""
    return _urlsafe_b64encode(secrets.token_bytes(VERIFIER_BYTES))


def generate_code_challenge(code_verifier: str) -> str:
    """S256 code challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _urlsafe_b64encode(digest)


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class AuthorizationState(BaseModel):
    """What the client needs to continue an OAuth flow."""

    state: str
    code_challenge: Optional[str] = None


class PKCEStateStore:
    """Issues and consumes single-use OAuth state tokens."""

    def __init__(
        self,
        store: StateStore,
        *,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], datetime.datetime] = _utc_now,
        verifier_factory: Callable[[], str] = generate_code_verifier,
        state_factory: Callable[[], str] = generate_state,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._verifier_factory = verifier_factory
        self._state_factory = state_factory

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def begin(
        self, redirect_uri: Optional[str] = None, use_pkce: bool = True
    ) -> AuthorizationState:
        """
        Start an authorization attempt.

        Args:
            redirect_uri (str | None): Client URI that should receive the session.
            use_pkce (bool): Whether to bind the attempt to a code verifier.

        Returns:
            AuthorizationState: The state token and, for PKCE flows, the S256
            challenge to embed in the authorization URL.
        """
        now = self._clock()
        code_verifier = self._verifier_factory() if use_pkce else None
        pending = PendingAuthorization(
            state=self._state_factory(),
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            created_at=now,
        )
        self._store.put(pending, ttl=epoch_seconds(now) + self._ttl_seconds)
        logger.info("Registered OAuth state %s... (pkce=%s)", pending.state[:5], use_pkce)
        return AuthorizationState(
            state=pending.state,
            code_challenge=generate_code_challenge(code_verifier) if code_verifier else None,
        )

    def consume(self, state: Optional[str]) -> PendingAuthorization:
        """
        Atomically read and delete the attempt registered under ``state``.

        Raises:
            InvalidRequest: If no state was supplied.
            InvalidState: If the state is unknown, already consumed or expired.
        """
        if not state:
            raise InvalidRequest("Missing state parameter")

        pending = self._store.take(state)
        if pending is None:
            log_auth_failure({"reason": "unknown_state", "state_prefix": state[:5]})
            raise InvalidState()

        if pending.is_expired(self._clock(), self._ttl_seconds):
            log_auth_failure({"reason": "expired_state", "state_prefix": state[:5]})
            raise InvalidState("OAuth state expired")

        return pending

    def purge_expired(self) -> int:
        """Remove attempts past their window."""
        removed = self._store.purge_expired(epoch_seconds(self._clock()))
        if removed:
            logger.info("Purged %d expired OAuth states", removed)
        return removed

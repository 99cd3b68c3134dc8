"""
OAuth exchange engine.

Drives a Square authorization attempt from the authorization URL through the
callback: state and PKCE validation, the authorization-code exchange, the
merchant identity lookup and the credential write. Each attempt moves through

    initiated -> authorized -> token_obtained -> persisted

or ends in ``failed``. Exactly one pending authorization is consumed and at
most one credential record is created or updated per callback, and every
attempt leaves one entry in the audit trail.
"""

import hmac
import logging
from enum import Enum
from typing import Callable, Iterable, Optional
from urllib.parse import quote, urlencode

from pydantic import BaseModel

from square_bff.core.audit import log_oauth_activity, log_token_refresh, log_token_revocation
from square_bff.core.credentials import CredentialRepository
from square_bff.core.errors import (
    ExchangeFailed,
    IdentityFetchFailed,
    InvalidRequest,
    MissingParameter,
    PKCEMismatch,
    ProviderDenied,
    SquareBffError,
)
from square_bff.core.models import MerchantCredential
from square_bff.core.settings import SquareSettings
from square_bff.oauth.pkce import PKCEStateStore
from square_bff.oauth.provider import MerchantIdentity, OAuthProvider, ProviderError

logger = logging.getLogger("oauth")

ALLOWED_SCOPES = frozenset(
    {
        "ITEMS_READ",
        "ITEMS_WRITE",
        "INVENTORY_READ",
        "INVENTORY_WRITE",
        "MERCHANT_PROFILE_READ",
        "ORDERS_READ",
        "ORDERS_WRITE",
        "CUSTOMERS_READ",
        "CUSTOMERS_WRITE",
    }
)

DEFAULT_SCOPES = (
    "ITEMS_READ",
    "ITEMS_WRITE",
    "INVENTORY_READ",
    "MERCHANT_PROFILE_READ",
    "ORDERS_READ",
    "CUSTOMERS_READ",
)


class FlowState(str, Enum):
    """Lifecycle of one authorization attempt."""

    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    TOKEN_OBTAINED = "token_obtained"
    PERSISTED = "persisted"
    FAILED = "failed"


_TRANSITIONS = {
    FlowState.INITIATED: {FlowState.AUTHORIZED, FlowState.FAILED},
    FlowState.AUTHORIZED: {FlowState.TOKEN_OBTAINED, FlowState.FAILED},
    FlowState.TOKEN_OBTAINED: {FlowState.PERSISTED, FlowState.FAILED},
    FlowState.PERSISTED: set(),
    FlowState.FAILED: set(),
}


class OAuthAttempt:
    """Tracks the state of a single callback through the exchange."""

    def __init__(self, state_prefix: str) -> None:
        self.state = FlowState.INITIATED
        self.state_prefix = state_prefix
        self.merchant_id: Optional[str] = None

    def advance(self, next_state: FlowState) -> None:
        if next_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal OAuth transition {self.state.value} -> {next_state.value}")
        logger.debug("OAuth attempt %s...: %s -> %s", self.state_prefix, self.state, next_state)
        self.state = next_state

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]


class AuthorizationRequest(BaseModel):
    """Authorization URL plus the values the client round-trips."""

    authorization_url: str
    state: str
    code_challenge: Optional[str] = None


class OAuthResult(BaseModel):
    """Outcome of a successful callback."""

    credential: MerchantCredential
    identity: MerchantIdentity
    session_token: str
    redirect_uri: Optional[str] = None
    created: bool


def resolve_scopes(requested_scopes: Optional[Iterable[str]]) -> list[str]:
    """
    Validate requested scopes against the allow-list.

    Returns the default scopes when nothing is requested. Duplicates are dropped
    while preserving order.

    Raises:
        InvalidRequest: If any requested scope is outside the allow-list.
    """
    if not requested_scopes:
        return list(DEFAULT_SCOPES)
    scopes: list[str] = []
    for scope in requested_scopes:
        normalized = scope.strip().upper()
        if not normalized:
            continue
        if normalized not in ALLOWED_SCOPES:
            raise InvalidRequest(f"Scope not allowed: {scope}")
        if normalized not in scopes:
            scopes.append(normalized)
    return scopes or list(DEFAULT_SCOPES)


class OAuthExchangeEngine:
    """Authorization-code exchange for Square merchants."""

    def __init__(
        self,
        settings: SquareSettings,
        state_store: PKCEStateStore,
        credentials: CredentialRepository,
        provider: OAuthProvider,
        session_issuer: Callable[[str, SquareSettings], str],
    ) -> None:
        self._settings = settings
        self._state_store = state_store
        self._credentials = credentials
        self._provider = provider
        self._session_issuer = session_issuer

    def _check_redirect_uri(self, redirect_uri: Optional[str]) -> None:
        if redirect_uri is not None and redirect_uri not in self._settings.redirect_uri_allow_list:
            log_oauth_activity(
                {"action": "oauth_start", "reason": "redirect_uri_not_allowed"}, success=False
            )
            raise InvalidRequest("redirect_uri is not allowed")

    def initiate(
        self,
        requested_scopes: Optional[Iterable[str]] = None,
        redirect_uri: Optional[str] = None,
        use_pkce: bool = True,
    ) -> AuthorizationRequest:
        """
        Start an authorization attempt and build the Square authorization URL.

        Args:
            requested_scopes: Scopes to request; must be within the allow-list.
            redirect_uri: Client URI that should receive the session afterwards.
            use_pkce: Bind the attempt to a server-held code verifier.

        Returns:
            AuthorizationRequest: The URL to send the merchant to and its state.
        """
        scopes = resolve_scopes(requested_scopes)
        self._check_redirect_uri(redirect_uri)

        authorization = self._state_store.begin(redirect_uri=redirect_uri, use_pkce=use_pkce)

        params = {
            "client_id": self._settings.app_id,
            "scope": " ".join(scopes),
            "response_type": "code",
            "state": authorization.state,
        }
        if authorization.code_challenge:
            params["code_challenge"] = authorization.code_challenge
            params["code_challenge_method"] = "S256"
        if self._settings.square_redirect_uri:
            params["redirect_uri"] = self._settings.square_redirect_uri

        url = (
            f"{self._settings.square_base_url}/oauth2/authorize?"
            f"{urlencode(params, quote_via=quote)}"
        )
        log_oauth_activity(
            {"action": "oauth_start", "using_pkce": use_pkce, "scopes": params["scope"]}
        )
        return AuthorizationRequest(
            authorization_url=url,
            state=authorization.state,
            code_challenge=authorization.code_challenge,
        )

    def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        code_verifier: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> OAuthResult:
        """
        Complete an authorization attempt from Square's callback.

        Raises:
            ProviderDenied: Square reported an error; no state is consumed.
            MissingParameter: ``code`` or ``state`` is missing.
            InvalidState: The state is unknown, expired or already used.
            PKCEMismatch: The supplied verifier differs from the stored one.
            ExchangeFailed: Square rejected the code or was unreachable.
            IdentityFetchFailed: Tokens were issued but the merchant lookup
                failed. The tokens are discarded and nothing is persisted.
        """
        attempt = OAuthAttempt((state or "")[:5])
        try:
            result = self._run_callback(
                attempt, code, state, code_verifier, error, error_description
            )
        except SquareBffError as e:
            if not attempt.is_terminal:
                attempt.advance(FlowState.FAILED)
            log_oauth_activity(
                {
                    "action": "oauth_callback",
                    "reason": e.code,
                    "flow_state": attempt.state.value,
                    "state_prefix": attempt.state_prefix,
                    "merchant_id": attempt.merchant_id,
                },
                success=False,
            )
            raise
        log_oauth_activity(
            {
                "action": "oauth_callback",
                "merchant_id": result.credential.merchant_id,
                "new_merchant": result.created,
                "flow_state": attempt.state.value,
            }
        )
        return result

    def _run_callback(
        self,
        attempt: OAuthAttempt,
        code: Optional[str],
        state: Optional[str],
        code_verifier: Optional[str],
        error: Optional[str],
        error_description: Optional[str],
    ) -> OAuthResult:
        if error:
            logger.warning("Square returned OAuth error: %s", error)
            raise ProviderDenied(error_description or error)
        if not code or not state:
            raise MissingParameter("Both code and state are required")

        pending = self._state_store.consume(state)
        if (
            pending.code_verifier
            and code_verifier
            and not hmac.compare_digest(pending.code_verifier, code_verifier)
        ):
            raise PKCEMismatch()
        attempt.advance(FlowState.AUTHORIZED)

        verifier = pending.code_verifier or code_verifier
        try:
            grant = self._provider.exchange_code(
                code, self._settings.square_redirect_uri or None, verifier
            )
        except ProviderError as e:
            raise ExchangeFailed(f"Square token exchange failed: {e.detail}") from e
        attempt.advance(FlowState.TOKEN_OBTAINED)
        attempt.merchant_id = grant.merchant_id

        try:
            identity = self._provider.fetch_identity(grant.access_token)
        except ProviderError as e:
            raise IdentityFetchFailed(f"Unable to fetch merchant identity: {e.detail}") from e
        attempt.merchant_id = identity.merchant_id

        credential, created = self._credentials.upsert(
            identity.merchant_id,
            grant.access_token,
            grant.refresh_token,
            grant.expires_at,
        )
        attempt.advance(FlowState.PERSISTED)
        logger.info(
            "OAuth completed for merchant %s (%s)",
            identity.merchant_id,
            "new" if created else "existing",
        )

        return OAuthResult(
            credential=credential,
            identity=identity,
            session_token=self._session_issuer(identity.merchant_id, self._settings),
            redirect_uri=pending.redirect_uri,
            created=created,
        )

    def refresh(self, merchant_id: str) -> MerchantCredential:
        """
        Refresh a merchant's Square tokens and store the new triple.

        Raises:
            NotFound: If the merchant has no stored credentials.
            ExchangeFailed: If Square rejects the refresh token.
        """
        current = self._credentials.require(merchant_id)
        try:
            grant = self._provider.refresh(current.refresh_token)
        except ProviderError as e:
            log_token_refresh({"merchant_id": merchant_id, "reason": e.detail}, success=False)
            raise ExchangeFailed(f"Square token refresh failed: {e.detail}") from e
        credential = self._credentials.update(
            merchant_id, grant.access_token, grant.refresh_token, grant.expires_at
        )
        log_token_refresh({"merchant_id": merchant_id})
        return credential

    def revoke(self, merchant_id: str) -> None:
        """
        Revoke a merchant's authorization and forget its credentials.

        The local record is deleted even when Square cannot be reached; the
        failure is recorded in the audit trail.
        """
        credential = self._credentials.get(merchant_id)
        if credential is not None:
            try:
                self._provider.revoke(credential.access_token, merchant_id)
            except ProviderError as e:
                log_token_revocation(
                    {"merchant_id": merchant_id, "reason": e.detail}, success=False
                )
        self._credentials.delete(merchant_id)
        log_token_revocation(
            {"merchant_id": merchant_id, "had_credentials": credential is not None}
        )

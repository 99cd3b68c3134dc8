"""
OAuth provider interface and its Square implementation.

The exchange engine talks to Square only through :class:`OAuthProvider`, so
tests can substitute a double without touching the SDK.
"""

import datetime
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field
from square import Square
from square.core.api_error import ApiError
from square.environment import SquareEnvironment

from square_bff.core.settings import SquareSettings

logger = logging.getLogger("square")


class ProviderError(Exception):
    """Square rejected a request or could not be reached."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class TokenGrant(BaseModel):
    """Tokens returned by Square's token endpoint."""

    access_token: str = Field(..., repr=False)
    refresh_token: str = Field(..., repr=False)
    expires_at: datetime.datetime
    merchant_id: Optional[str] = None


class MerchantIdentity(BaseModel):
    """The merchant that owns an access token."""

    merchant_id: str
    business_name: str = "Unknown"
    country: Optional[str] = None
    language_code: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[str] = None


class OAuthProvider(ABC):
    """Operations the exchange engine needs from the OAuth provider."""

    @abstractmethod
    def exchange_code(
        self, code: str, redirect_uri: Optional[str], code_verifier: Optional[str]
    ) -> TokenGrant:
        """Exchange a single-use authorization code for tokens. Never retried."""

    @abstractmethod
    def fetch_identity(self, access_token: str) -> MerchantIdentity:
        """Look up the merchant that owns ``access_token``."""

    @abstractmethod
    def refresh(self, refresh_token: str) -> TokenGrant:
        """Obtain a new token triple from a refresh token."""

    @abstractmethod
    def revoke(self, access_token: str, merchant_id: str) -> None:
        """Revoke the merchant's authorization."""


def parse_expires_at(value: Any) -> datetime.datetime:
    """Parse Square's ISO-8601 ``expires_at`` into an aware datetime."""
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ProviderError("Token response did not include expires_at")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed


def _describe_api_error(error: ApiError) -> str:
    body = error.body
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            return str(first.get("detail") or first.get("code") or errors)
        message = body.get("message") or body.get("error_description") or body.get("error")
        if message:
            return str(message)
    return f"Square API error (status {error.status_code})"


def _describe_response_errors(errors: Any) -> str:
    first = errors[0]
    detail = getattr(first, "detail", None) or getattr(first, "code", None)
    return str(detail or first)


def _square_environment(settings: SquareSettings) -> SquareEnvironment:
    if settings.is_production:
        return SquareEnvironment.PRODUCTION
    return SquareEnvironment.SANDBOX


class SquareOAuthProvider(OAuthProvider):
    """OAuthProvider backed by the Square Python SDK."""

    def __init__(
        self,
        settings: SquareSettings,
        client_factory: Optional[Callable[[Optional[str]], Square]] = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or self._create_client

    def _create_client(self, access_token: Optional[str] = None) -> Square:
        """Build a Square client, authenticated as a merchant when a token is given."""
        return Square(
            token=access_token or "",
            environment=_square_environment(self._settings),
            timeout=self._settings.square_timeout_seconds,
        )

    def _request_options(self, max_retries: int, **extra: Any) -> dict[str, Any]:
        return {
            "timeout_in_seconds": int(self._settings.square_timeout_seconds),
            "max_retries": max_retries,
            **extra,
        }

    def _obtain_token(self, **body: Any) -> TokenGrant:
        client = self._client_factory(None)
        try:
            response = client.o_auth.obtain_token(
                client_id=self._settings.app_id,
                request_options=self._request_options(max_retries=0),
                **body,
            )
        except ApiError as e:
            detail = _describe_api_error(e)
            logger.error("Square token endpoint rejected the request: %s", detail)
            raise ProviderError(detail, e.status_code) from e
        except Exception as e:
            logger.error("Error calling Square token endpoint: %s", e)
            raise ProviderError(f"Square token endpoint unreachable: {type(e).__name__}") from e

        if getattr(response, "errors", None):
            detail = _describe_response_errors(response.errors)
            logger.error("Square token endpoint returned errors: %s", detail)
            raise ProviderError(detail)
        if not response.access_token or not response.refresh_token:
            raise ProviderError("Token response did not include the expected tokens")

        return TokenGrant(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            expires_at=parse_expires_at(response.expires_at),
            merchant_id=response.merchant_id,
        )

    def exchange_code(
        self, code: str, redirect_uri: Optional[str], code_verifier: Optional[str]
    ) -> TokenGrant:
        body: dict[str, Any] = {"code": code, "grant_type": "authorization_code"}
        if redirect_uri:
            body["redirect_uri"] = redirect_uri
        if code_verifier:
            # PKCE grants authenticate with the verifier instead of the secret.
            body["code_verifier"] = code_verifier
        else:
            body["client_secret"] = self._settings.app_secret
        logger.info("Obtaining token from Square API (pkce=%s)", bool(code_verifier))
        return self._obtain_token(**body)

    def refresh(self, refresh_token: str) -> TokenGrant:
        logger.info("Refreshing token with Square API")
        return self._obtain_token(
            client_secret=self._settings.app_secret,
            refresh_token=refresh_token,
            grant_type="refresh_token",
        )

    def fetch_identity(self, access_token: str) -> MerchantIdentity:
        client = self._client_factory(access_token)
        try:
            response = client.merchants.get(
                merchant_id="me",
                request_options=self._request_options(
                    max_retries=self._settings.square_read_max_retries
                ),
            )
        except ApiError as e:
            detail = _describe_api_error(e)
            logger.error("Error fetching merchant info: %s", detail)
            raise ProviderError(detail, e.status_code) from e
        except Exception as e:
            logger.error("Error fetching merchant info: %s", e)
            raise ProviderError(f"Square merchants endpoint unreachable: {type(e).__name__}") from e

        if getattr(response, "errors", None):
            raise ProviderError(_describe_response_errors(response.errors))
        merchant = response.merchant
        if merchant is None or not merchant.id:
            raise ProviderError("Merchant response did not include a merchant id")

        return MerchantIdentity(
            merchant_id=merchant.id,
            business_name=merchant.business_name or "Unknown",
            country=merchant.country,
            language_code=merchant.language_code,
            currency=merchant.currency,
            status=merchant.status,
        )

    def revoke(self, access_token: str, merchant_id: str) -> None:
        client = self._client_factory(None)
        try:
            response = client.o_auth.revoke_token(
                client_id=self._settings.app_id,
                access_token=access_token,
                request_options=self._request_options(
                    max_retries=self._settings.square_read_max_retries,
                    additional_headers={"Authorization": f"Client {self._settings.app_secret}"},
                ),
            )
        except ApiError as e:
            detail = _describe_api_error(e)
            logger.error("Error revoking token for %s: %s", merchant_id, detail)
            raise ProviderError(detail, e.status_code) from e
        except Exception as e:
            logger.error("Error revoking token for %s: %s", merchant_id, e)
            raise ProviderError(f"Square revoke endpoint unreachable: {type(e).__name__}") from e

        if getattr(response, "errors", None):
            raise ProviderError(_describe_response_errors(response.errors))
        logger.info("Revoked Square authorization for merchant: %s", merchant_id)

"""Square plugin module.

This module provides the API endpoints of the Square integration: the OAuth
authorization flow (with PKCE for mobile clients), token refresh and
revocation for connected merchants, and the webhook receiver.

Blocking work (database and Square API calls) runs in a worker thread so the
event loop stays responsive.
"""

import logging
from functools import partial
from typing import Optional
from urllib.parse import urlencode

import anyio
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, RedirectResponse

from square_bff.core.auth import TokenData, get_current_merchant
from square_bff.core.credentials import CredentialRepository
from square_bff.core.dependencies import (
    get_credential_repository,
    get_exchange_engine,
    get_webhook_engine,
)
from square_bff.core.errors import HandlerFailure
from square_bff.oauth.exchange import AuthorizationRequest, OAuthExchangeEngine
from square_bff.webhooks.ingestion import WebhookIngestionEngine

# Setup module-level logger
logger = logging.getLogger("square")


def _split_scopes(scope: Optional[str]) -> Optional[list[str]]:
    if not scope:
        return None
    return [part for part in scope.replace(",", " ").split() if part]


def _with_query(url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def create_square_router() -> APIRouter:
    """Create a router for the Square integration."""

    router = APIRouter()

    async def _initiate(
        engine: OAuthExchangeEngine, scope: Optional[str], redirect_uri: Optional[str], pkce: bool
    ) -> AuthorizationRequest:
        return await anyio.to_thread.run_sync(
            partial(
                engine.initiate,
                requested_scopes=_split_scopes(scope),
                redirect_uri=redirect_uri,
                use_pkce=pkce,
            )
        )

    @router.get("/oauth")
    async def initiate_oauth(
        scope: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        pkce: bool = True,
        engine: OAuthExchangeEngine = Depends(get_exchange_engine),
    ) -> RedirectResponse:
        """Initiate OAuth flow by redirecting to Square's authorization page."""
        authorization = await _initiate(engine, scope, redirect_uri, pkce)
        logger.info("Redirecting to Square OAuth (state %s...)", authorization.state[:5])
        return RedirectResponse(authorization.authorization_url)

    @router.get("/oauth/url", response_model=AuthorizationRequest)
    async def oauth_url(
        scope: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        pkce: bool = True,
        engine: OAuthExchangeEngine = Depends(get_exchange_engine),
    ) -> AuthorizationRequest:
        """Return the authorization URL as JSON for clients that open it themselves."""
        return await _initiate(engine, scope, redirect_uri, pkce)

    @router.get("/oauth/callback", response_model=None)
    async def oauth_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        engine: OAuthExchangeEngine = Depends(get_exchange_engine),
    ) -> RedirectResponse | JSONResponse:
        """
        Handle OAuth callback from Square.

        On success the merchant's tokens are stored and a session JWT is issued.
        If the flow registered a client redirect URI, the client is redirected
        there with ``success``, ``merchant_id`` and ``access_token`` query
        parameters; otherwise the session is returned as JSON.

        Args:
            code (str | None): The authorization code from Square.
            state (str | None): The state parameter issued when the flow started.
            code_verifier (str | None): PKCE verifier held by a mobile client.
            error (str | None): Error reported by Square instead of a code.
            error_description (str | None): Square's description of the error.
        """
        logger.info("OAuth callback received: state=%s...", (state or "")[:5])
        result = await anyio.to_thread.run_sync(
            partial(
                engine.handle_callback,
                code,
                state,
                code_verifier=code_verifier,
                error=error,
                error_description=error_description,
            )
        )

        merchant_id = result.credential.merchant_id
        if result.redirect_uri:
            redirect_url = _with_query(
                result.redirect_uri,
                {
                    "success": "true",
                    "merchant_id": merchant_id,
                    "access_token": result.session_token,
                },
            )
            logger.info("Redirecting merchant %s to client callback", merchant_id)
            return RedirectResponse(url=redirect_url)

        return JSONResponse(
            {
                "success": True,
                "merchant_id": merchant_id,
                "access_token": result.session_token,
                "token_type": "bearer",
                "business_name": result.identity.business_name,
                "new_merchant": result.created,
            }
        )

    @router.get("/oauth/status")
    async def oauth_status(
        current_merchant: TokenData = Depends(get_current_merchant),
        credentials: CredentialRepository = Depends(get_credential_repository),
    ) -> dict:
        """Whether the authenticated merchant has stored Square credentials."""
        credential = await anyio.to_thread.run_sync(credentials.get, current_merchant.merchant_id)
        return {
            "merchant_id": current_merchant.merchant_id,
            "connected": credential is not None,
            "expires_at": credential.expires_at.isoformat() if credential else None,
        }

    @router.post("/oauth/refresh")
    async def refresh_token(
        current_merchant: TokenData = Depends(get_current_merchant),
        engine: OAuthExchangeEngine = Depends(get_exchange_engine),
    ) -> dict:
        """Refresh the authenticated merchant's Square tokens."""
        credential = await anyio.to_thread.run_sync(engine.refresh, current_merchant.merchant_id)
        return {
            "merchant_id": credential.merchant_id,
            "expires_at": credential.expires_at.isoformat(),
        }

    @router.post("/oauth/revoke")
    async def revoke_token(
        current_merchant: TokenData = Depends(get_current_merchant),
        engine: OAuthExchangeEngine = Depends(get_exchange_engine),
    ) -> dict:
        """Revoke the authenticated merchant's authorization and forget its tokens."""
        await anyio.to_thread.run_sync(engine.revoke, current_merchant.merchant_id)
        return {"success": True, "message": "Token revoked successfully"}

    @router.post("/webhooks")
    async def receive_webhook(
        request: Request,
        x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
        engine: WebhookIngestionEngine = Depends(get_webhook_engine),
    ) -> dict:
        """
        Receive a Square webhook.

        Once the signature is verified and the event stored, the delivery is
        acknowledged with 200 whatever the handler outcome, so Square does not
        redeliver on internal errors; failed events are visible through their
        status.
        """
        raw_body = await request.body()
        try:
            receipt = await anyio.to_thread.run_sync(engine.receive, raw_body, x_signature)
        except HandlerFailure as e:
            logger.error("Webhook %s stored but handler failed: %s", e.webhook_id, e.detail)
            return {"received": True, "status": "failed", "webhook_id": e.webhook_id}

        return {
            "received": True,
            "status": receipt.status.value,
            "webhook_id": receipt.webhook_id,
        }

    return router

"""Test authentication module."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from square_bff.core.auth import (
    TokenData,
    create_access_token,
    decode_access_token,
    get_current_merchant,
)
from square_bff.core.settings import SquareSettings


def make_request(settings: SquareSettings) -> MagicMock:
    """Request whose application carries ``settings``."""
    request = MagicMock()
    request.app.state.settings = settings
    return request


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_create_access_token(settings: SquareSettings) -> None:
    """Test JWT token creation."""
    merchant_id = "test_merchant_123"
    token = create_access_token(merchant_id, settings)
    assert token is not None
    assert isinstance(token, str)

    claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    assert claims["merchant_id"] == merchant_id
    assert claims["sub"] == merchant_id
    assert claims["exp"] - claims["iat"] == settings.jwt_access_token_expire_minutes * 60


def test_create_access_token_requires_secret(settings: SquareSettings) -> None:
    with pytest.raises(RuntimeError):
        create_access_token("test_merchant_123", settings.model_copy(update={"jwt_secret_key": ""}))


def test_token_validation(settings: SquareSettings) -> None:
    """Test JWT token validation."""
    merchant_id = "test_merchant_123"
    token = create_access_token(merchant_id, settings)

    # Validate the token
    token_data = get_current_merchant(make_request(settings), bearer(token))
    assert isinstance(token_data, TokenData)
    assert token_data.merchant_id == merchant_id
    assert token_data.exp is not None


def test_invalid_token(settings: SquareSettings) -> None:
    """Test invalid token handling."""
    with pytest.raises(HTTPException) as exc_info:
        get_current_merchant(make_request(settings), bearer("invalid_token"))
    assert exc_info.value.status_code == 401


def test_token_signed_with_other_key(settings: SquareSettings) -> None:
    forged = create_access_token(
        "test_merchant_123", settings.model_copy(update={"jwt_secret_key": "attacker_key"})
    )

    with pytest.raises(HTTPException) as exc_info:
        decode_access_token(forged, settings)
    assert exc_info.value.status_code == 401


def test_expired_token(settings: SquareSettings) -> None:
    expired = jwt.encode(
        {"merchant_id": "test_merchant_123", "exp": datetime.now(UTC) - timedelta(minutes=1)},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )

    with pytest.raises(HTTPException) as exc_info:
        decode_access_token(expired, settings)
    assert exc_info.value.status_code == 401


def test_token_without_merchant_claim(settings: SquareSettings) -> None:
    token = jwt.encode(
        {"sub": "someone", "exp": datetime.now(UTC) + timedelta(minutes=5)},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )

    with pytest.raises(HTTPException):
        decode_access_token(token, settings)

"""Authentication module for session JWT handling."""

from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from square_bff.core.settings import SquareSettings

security = HTTPBearer()


class TokenData(BaseModel):
    """Token data model."""

    merchant_id: str
    exp: Optional[datetime] = None


def create_access_token(merchant_id: str, settings: SquareSettings) -> str:
    """Create a new session JWT for a merchant."""
    if not settings.jwt_secret_key:
        raise RuntimeError("JWT_SECRET_KEY is not configured")
    now = datetime.now(UTC)
    expire = now + timedelta(minutes=settings.jwt_access_token_expire_minutes)
    to_encode = {"merchant_id": merchant_id, "sub": merchant_id, "iat": now, "exp": expire}
    encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return encoded_jwt


def decode_access_token(token: str, settings: SquareSettings) -> TokenData:
    """
    Validate a session JWT and return its merchant data.

    Raises:
        HTTPException: 401 if the token is malformed, forged or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise credentials_exception

    merchant_id_value: Any | None = payload.get("merchant_id")
    if not isinstance(merchant_id_value, str):
        raise credentials_exception
    merchant_id: str = merchant_id_value

    exp_value = payload.get("exp")
    if exp_value is None:
        raise credentials_exception

    token_data = TokenData(merchant_id=merchant_id, exp=datetime.fromtimestamp(exp_value, tz=UTC))

    if token_data.exp is None or token_data.exp < datetime.now(UTC):
        raise credentials_exception

    return token_data


def get_current_merchant(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TokenData:
    """Validate the bearer token and return merchant data."""
    settings: SquareSettings = request.app.state.settings
    return decode_access_token(credentials.credentials, settings)

"""JWT helpers for application session tokens."""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from app.config import settings


def _encode(data: dict[str, Any], token_type: str, expire: datetime) -> str:
    to_encode = data.copy()
    to_encode.update(
        {
            "exp": expire,
            "iat": datetime.now(UTC),
            "type": token_type,
            "jti": uuid4().hex,
        }
    )
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def _decode(token: str, token_type: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    if payload.get("type") != token_type:
        return None

    return payload


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode (``sub`` is the external identity id)
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    return _encode(data, "access", expire)


def create_refresh_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT refresh token.

    Args:
        data: Payload data to encode
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT refresh token
    """
    expire = datetime.now(UTC) + (expires_delta or timedelta(days=settings.refresh_token_expire_days))
    return _encode(data, "refresh", expire)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate an access token; None if invalid, expired or of another type."""
    return _decode(token, "access")


def decode_refresh_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a refresh token; None if invalid, expired or of another type."""
    return _decode(token, "refresh")

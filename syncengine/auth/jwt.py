"""
JWT token creation and validation.
Uses python-jose for JWT handling.

Two token types are issued: "access" tokens identify the calling account
(``sub`` is the account id) and short-lived "oauth_state" tokens carry the
account through the Intuit consent redirect.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from jose import JWTError, jwt

from syncengine.config import get_settings


def _encode(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
    settings = get_settings()
    now = datetime.utcnow()
    to_encode = data.copy()
    to_encode.update({"exp": now + expires_delta, "iat": now, "type": token_type})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, token_type: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if payload.get("type") != token_type:
            raise JWTError("Invalid token type")
        return payload
    except JWTError as e:
        raise JWTError(f"Token validation failed: {str(e)}")


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode; ``sub`` must be the account id
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=get_settings().jwt_expiration_minutes)
    return _encode(data, "access", expires_delta)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.

    Raises:
        JWTError: If token is invalid, expired or not an access token
    """
    return _decode(token, "access")


def create_oauth_state(account_id: str) -> str:
    """Signed state parameter for the Intuit authorization redirect."""
    ttl = timedelta(minutes=get_settings().oauth_state_ttl_minutes)
    return _encode({"sub": account_id, "nonce": uuid4().hex}, "oauth_state", ttl)


def decode_oauth_state(state: str) -> str:
    """
    Validate a state parameter returned by Intuit.

    Returns:
        The account id the consent flow was started for

    Raises:
        JWTError: If the state is forged, expired or malformed
    """
    payload = _decode(state, "oauth_state")
    account_id = payload.get("sub")
    if not account_id:
        raise JWTError("OAuth state carries no account")
    return account_id

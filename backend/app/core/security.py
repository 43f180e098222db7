"""
Access token handling.

Tokens are issued by the site's auth service; the forum only verifies them.
The subject claim carries the member id and `name` the display name.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pydantic import BaseModel

from app.core.config import settings


class TokenPayload(BaseModel):
    sub: int
    name: str = ""


def decode_access_token(token: str) -> TokenPayload:
    """
    Verify a bearer token.

    Raises:
        jwt.InvalidTokenError: Bad signature, expired or malformed
        pydantic.ValidationError: Claims missing or of the wrong type
    """
    payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    return TokenPayload(**payload)


def create_access_token(
    user_id: int,
    name: str,
    expires_delta: timedelta = timedelta(hours=1),
) -> str:
    """Issue a token (development tooling and tests)."""
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "name": name,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

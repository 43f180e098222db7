"""
Shared API dependencies: identity, capabilities and collaborators.
"""

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from app.core.security import decode_access_token
from app.modules.forum.permissions import (
    ForumUser,
    PermissionService,
    get_permission_service,
)
from app.modules.forum.presence import SESSION_COOKIE, PresenceTracker

bearer_scheme = HTTPBearer(auto_error=False)


async def _resolve_user(token: str, permissions: PermissionService) -> ForumUser:
    try:
        payload = decode_access_token(token)
    except (jwt.InvalidTokenError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return ForumUser(
        id=payload.sub,
        name=payload.name or f"member{payload.sub}",
        is_moderator=await permissions.can_moderate(payload.sub),
        is_admin=await permissions.is_admin(payload.sub),
    )


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    permissions: PermissionService = Depends(get_permission_service),
) -> ForumUser | None:
    """Current member, or None for guests. A bad token is still rejected."""
    if credentials is None:
        return None
    return await _resolve_user(credentials.credentials, permissions)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    permissions: PermissionService = Depends(get_permission_service),
) -> ForumUser:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await _resolve_user(credentials.credentials, permissions)


def get_current_admin(current_user: ForumUser = Depends(get_current_user)) -> ForumUser:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator permissions required",
        )
    return current_user


def get_guest_key(request: Request) -> str | None:
    """Identity of a guest voter: session cookie, else client IP."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return session_id
    return request.client.host if request.client else None


def get_presence_tracker(request: Request) -> PresenceTracker:
    tracker: PresenceTracker | None = getattr(request.app.state, "presence", None)
    if tracker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Presence tracking is disabled",
        )
    return tracker

"""
Presence API Endpoints.

Who is online, from the sessions recorded by the activity middleware.
"""

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_presence_tracker
from app.api.v1.serializers import iso
from app.modules.forum.presence import PresenceTracker

router = APIRouter()


@router.get("/online")
async def get_online_users(
    filter: Literal["all", "members", "guests"] = Query("all"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    presence: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """List online members and guests."""
    result = await presence.get_online_users(filter=filter, limit=limit, offset=offset)
    for user in result["users"]:
        user["time"] = iso(user["time"])
    return result


@router.get("/online/stats")
async def get_online_stats(
    presence: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """Online totals."""
    return await presence.get_online_stats()

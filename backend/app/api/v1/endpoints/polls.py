"""
Poll API Endpoints.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_guest_key, get_optional_user
from app.api.v1.serializers import poll_to_dict
from app.core.database import get_db
from app.modules.forum.permissions import ForumUser
from app.modules.forum.polls import PollService

router = APIRouter()


# ==================== Schemas ====================


class VoteRequest(BaseModel):
    """Selected choices."""

    choice_ids: list[int]


class LockVotingRequest(BaseModel):
    locked: bool


# ==================== Polls ====================


@router.get("/polls/{poll_id}")
async def get_poll(
    poll_id: int,
    user: ForumUser | None = Depends(get_optional_user),
    guest_key: str | None = Depends(get_guest_key),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get poll; vote counts are null while results are hidden."""
    polls = PollService(db)
    view = await polls.get_poll(poll_id, user=user, guest_key=guest_key)
    return poll_to_dict(view)


@router.post("/polls/{poll_id}/vote")
async def vote_poll(
    poll_id: int,
    request: VoteRequest,
    user: ForumUser | None = Depends(get_optional_user),
    guest_key: str | None = Depends(get_guest_key),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Vote in a poll. Guests may vote only where the poll allows it."""
    polls = PollService(db)
    view = await polls.vote_poll(poll_id, user, request.choice_ids, guest_key=guest_key)
    return poll_to_dict(view)


@router.put("/polls/{poll_id}/lock")
async def lock_poll_voting(
    poll_id: int,
    request: LockVotingRequest,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Lock or unlock voting (moderators)."""
    polls = PollService(db)
    poll = await polls.set_voting_locked(poll_id, request.locked, user)
    return {"id": poll.id, "voting_locked": poll.voting_locked}

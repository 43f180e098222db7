"""
Forum API Endpoints.

Boards, topics, messages, read markers and activity feeds.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_optional_user
from app.api.v1.serializers import (
    board_to_dict,
    excerpt,
    iso,
    message_to_dict,
    topic_to_dict,
)
from app.core.config import settings
from app.core.database import get_db
from app.modules.forum.permissions import ForumUser
from app.modules.forum.polls import PollDraft
from app.modules.forum.read_state import ReadStateService
from app.modules.forum.service import ForumService

router = APIRouter()


# ==================== Schemas ====================


class PollRequest(BaseModel):
    """Poll attached to a new topic."""

    question: str
    choices: list[str]
    max_votes: int = 1
    expire_time: datetime | None = None
    hide_results: int = 0
    change_vote: bool = False
    guest_vote: bool = False


class CreateTopicRequest(BaseModel):
    """Create new topic."""

    board_id: int
    subject: str
    body: str
    poll: PollRequest | None = None


class CreatePostRequest(BaseModel):
    """Reply to a topic."""

    topic_id: int
    subject: str | None = None
    body: str


class UpdatePostRequest(BaseModel):
    """Edit a message."""

    body: str
    subject: str | None = None


# ==================== Categories & Boards ====================


@router.get("/categories")
async def get_categories(
    db: AsyncSession = Depends(get_db, scope="function"),
) -> list[dict[str, Any]]:
    """Get all categories with their boards."""
    forum = ForumService(db)
    categories = await forum.get_categories()

    return [
        {
            "id": category.id,
            "name": category.name,
            "boards": [board_to_dict(board) for board in category.boards],
        }
        for category in categories
    ]


@router.get("/boards/{board_id}")
async def get_board(
    board_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.forum_topics_per_page, ge=1, le=100),
    user: ForumUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get board with one page of topics, sticky first."""
    forum = ForumService(db)
    board, topics = await forum.get_board_with_topics(board_id, page=page, limit=limit)

    unread: set[int] = set()
    if user is not None:
        unread = await ReadStateService(db).unread_topic_ids(
            user.id, [topic.id for topic in topics.items]
        )

    return {
        "board": board_to_dict(board),
        "topics": [
            {**topic_to_dict(topic), "is_unread": topic.id in unread}
            for topic in topics.items
        ],
        "pagination": topics.meta(),
    }


# ==================== Topics ====================


@router.get("/topics/{topic_id}")
async def get_topic(
    topic_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.forum_posts_per_page, ge=1, le=100),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get topic with one page of messages, oldest first."""
    forum = ForumService(db)
    result = await forum.get_topic_with_posts(topic_id, page=page, limit=limit)
    posts = result.posts

    return {
        "topic": topic_to_dict(result.topic),
        "board": {"id": result.board.id, "name": result.board.name},
        "poll_id": result.poll_id,
        "posts": [
            message_to_dict(message, post_number=posts.offset + index + 1)
            for index, message in enumerate(posts.items)
        ],
        "pagination": posts.meta(),
    }


@router.post("/topics/{topic_id}/view")
async def view_topic(
    topic_id: int,
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Count a topic view."""
    forum = ForumService(db)
    await forum.increment_topic_views(topic_id)
    return {"success": True}


@router.post("/topics", status_code=status.HTTP_201_CREATED)
async def create_topic(
    request: CreateTopicRequest,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Create new topic, optionally with a poll."""
    forum = ForumService(db)

    poll = None
    if request.poll is not None:
        poll = PollDraft(**request.poll.model_dump())

    topic = await forum.create_topic(
        board_id=request.board_id,
        author=user,
        subject=request.subject,
        body=request.body,
        poll=poll,
    )

    return topic_to_dict(topic)


@router.post("/topics/{topic_id}/mark-read")
async def mark_topic_read(
    topic_id: int,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Mark topic as read."""
    marked_at = await ReadStateService(db).mark_topic_as_read(topic_id, user.id)
    return {"success": True, "marked_at": iso(marked_at)}


@router.post("/mark-all-read")
async def mark_all_read(
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Mark every topic as read."""
    marked_at = await ReadStateService(db).mark_all_as_read(user.id)
    return {"success": True, "marked_at": iso(marked_at)}


@router.get("/unread")
async def get_unread_topics(
    board_id: int | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get topics with messages the user has not read."""
    read_state = ReadStateService(db)
    topics = await read_state.get_unread_topics(
        user.id, board_id=board_id, limit=limit, offset=offset
    )
    total = await read_state.get_unread_count(user.id, board_id=board_id)

    return {
        "items": [topic_to_dict(topic) for topic in topics],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/unread/count")
async def get_unread_count(
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, int]:
    """Count unread topics."""
    return {"count": await ReadStateService(db).get_unread_count(user.id)}


# ==================== Posts ====================


@router.post("/posts", status_code=status.HTTP_201_CREATED)
async def create_post(
    request: CreatePostRequest,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Reply to a topic."""
    forum = ForumService(db)
    message = await forum.create_post(
        topic_id=request.topic_id,
        author=user,
        subject=request.subject,
        body=request.body,
    )
    return message_to_dict(message)


@router.put("/posts/{post_id}")
async def update_post(
    post_id: int,
    request: UpdatePostRequest,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Edit own message (moderators may edit any)."""
    forum = ForumService(db)
    message = await forum.update_post(post_id, user, body=request.body, subject=request.subject)
    return message_to_dict(message)


@router.delete("/posts/{post_id}")
async def delete_post(
    post_id: int,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Delete own reply (moderators may delete any)."""
    forum = ForumService(db)
    message = await forum.delete_post(post_id, user)
    return {"success": True, "id": message.id, "topic_id": message.topic_id}


@router.get("/posts/{post_id}/page")
async def get_post_page(
    post_id: int,
    page_size: int = Query(settings.forum_posts_per_page, ge=1, le=100),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Find the topic page a message is displayed on."""
    forum = ForumService(db)
    position = await forum.get_message_page(post_id, page_size=page_size)

    return {
        "message_id": position.message_id,
        "topic_id": position.topic_id,
        "position": position.position,
        "page": position.page,
        "page_size": position.page_size,
    }


# ==================== Activity ====================


@router.get("/messages/latest")
async def get_latest_messages(
    limit: int = Query(10, ge=1, le=50),
    offset: int = Query(0, ge=0),
    board_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get recently active topics with their latest message."""
    forum = ForumService(db)
    rows, total = await forum.get_latest_topics(limit=limit, offset=offset, board_id=board_id)

    return {
        "items": [
            {
                "topic": topic_to_dict(topic),
                "board_name": board_name,
                "last_message": {
                    "id": message.id,
                    "author": {"id": message.author_id, "name": message.author_name},
                    "posted_time": iso(message.posted_time),
                    "excerpt": excerpt(message.body),
                }
                if message
                else None,
            }
            for topic, message, board_name in rows
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats")
async def get_stats(
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, int]:
    """Forum totals."""
    return await ForumService(db).get_forum_stats()


@router.get("/users/{user_id}/activity")
async def get_user_activity(
    user_id: int,
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> list[dict[str, Any]]:
    """Get a member's latest messages."""
    forum = ForumService(db)
    rows = await forum.get_user_recent_activity(user_id, limit=limit)

    return [
        {
            "message_id": message.id,
            "subject": message.subject,
            "excerpt": excerpt(message.body),
            "posted_time": iso(message.posted_time),
            "topic": {"id": topic.id, "subject": topic.subject},
            "board_name": board_name,
        }
        for message, topic, board_name in rows
    ]

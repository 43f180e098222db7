"""
Moderation API Endpoints.

Reports, topic lock/sticky/move. Staff notifications are sent after the
response, once the transaction has committed.
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.api.v1.serializers import report_to_dict, topic_to_dict
from app.core.database import get_db
from app.models.forum import ReportStatus
from app.modules.forum.moderation import ModerationService
from app.modules.forum.notifications import ModerationNotifier, get_moderation_notifier
from app.modules.forum.permissions import ForumUser

router = APIRouter()


# ==================== Schemas ====================


class ReportRequest(BaseModel):
    """Report a message."""

    comment: str


class LockTopicRequest(BaseModel):
    locked: bool


class StickyTopicRequest(BaseModel):
    sticky: bool


class MoveTopicRequest(BaseModel):
    board_id: int


# ==================== Reports ====================


@router.post("/posts/{post_id}/report", status_code=status.HTTP_201_CREATED)
async def report_post(
    post_id: int,
    request: ReportRequest,
    background_tasks: BackgroundTasks,
    user: ForumUser = Depends(get_current_user),
    notifier: ModerationNotifier = Depends(get_moderation_notifier),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Report a message to moderators."""
    moderation = ModerationService(db)
    report = await moderation.report_message(post_id, user, request.comment)

    background_tasks.add_task(notifier.report_filed, report)
    return report_to_dict(report)


@router.get("/reports")
async def get_reports(
    status_filter: ReportStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """List reports, newest first (moderators)."""
    moderation = ModerationService(db)
    reports, total = await moderation.get_reports(
        user, status=status_filter, limit=limit, offset=offset
    )

    return {
        "items": [report_to_dict(report) for report in reports],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/reports/count")
async def get_reports_count(
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, int]:
    """Count reports per status (moderators)."""
    return await ModerationService(db).get_reports_count(user)


@router.get("/reports/{report_id}")
async def get_report(
    report_id: int,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Get report details (moderators)."""
    report = await ModerationService(db).get_report(report_id, user)
    return report_to_dict(report)


@router.put("/reports/{report_id}/close")
async def close_report(
    report_id: int,
    background_tasks: BackgroundTasks,
    user: ForumUser = Depends(get_current_user),
    notifier: ModerationNotifier = Depends(get_moderation_notifier),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Close an open report (moderators)."""
    report = await ModerationService(db).close_report(report_id, user)

    background_tasks.add_task(notifier.report_closed, report, user.name)
    return report_to_dict(report)


# ==================== Topics ====================


@router.put("/topics/{topic_id}/lock")
async def lock_topic(
    topic_id: int,
    request: LockTopicRequest,
    background_tasks: BackgroundTasks,
    user: ForumUser = Depends(get_current_user),
    notifier: ModerationNotifier = Depends(get_moderation_notifier),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Lock or unlock a topic (moderators)."""
    topic = await ModerationService(db).lock_topic(topic_id, request.locked, user)

    action = "locked" if topic.locked else "unlocked"
    background_tasks.add_task(notifier.topic_moderated, topic, action, user.name)
    return topic_to_dict(topic)


@router.put("/topics/{topic_id}/sticky")
async def sticky_topic(
    topic_id: int,
    request: StickyTopicRequest,
    user: ForumUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Pin or unpin a topic (moderators)."""
    topic = await ModerationService(db).set_sticky(topic_id, request.sticky, user)
    return topic_to_dict(topic)


@router.put("/topics/{topic_id}/move")
async def move_topic(
    topic_id: int,
    request: MoveTopicRequest,
    background_tasks: BackgroundTasks,
    user: ForumUser = Depends(get_current_user),
    notifier: ModerationNotifier = Depends(get_moderation_notifier),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Move a topic to another board (moderators)."""
    topic = await ModerationService(db).move_topic(topic_id, request.board_id, user)

    background_tasks.add_task(
        notifier.topic_moderated, topic, f"moved to board #{topic.board_id}", user.name
    )
    return topic_to_dict(topic)

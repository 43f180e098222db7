"""
Read-State Tracker - Per-user unread topics.

A topic is unread for a user when its last message is newer than every
read marker the user has for it: the topic marker and the global
"mark all read" marker. Missing markers never make a topic read.
"""

from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import upsert
from app.models.forum import ForumMarkRead, ForumTopic, ForumTopicRead
from app.modules.forum.exceptions import NotFoundError


class ReadStateService:
    """
    Service for read markers and unread queries.

    Usage:
        read_state = ReadStateService(db_session)
        await read_state.mark_all_as_read(user_id)
        count = await read_state.get_unread_count(user_id)
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize read-state service with database session."""
        self.db = db

    # ==================== Markers ====================

    async def mark_topic_as_read(self, topic_id: int, user_id: int) -> datetime:
        """
        Mark topic as read up to its latest message.

        The marker is the topic's last message time, so a reply posted
        between reading and marking keeps the topic unread.

        Returns:
            Stored marker time
        """
        topic = await self.db.get(ForumTopic, topic_id)
        if topic is None:
            raise NotFoundError("Topic not found")

        marked_at = topic.last_message_time or datetime.utcnow()
        await self.db.execute(
            upsert(
                self.db,
                ForumTopicRead,
                {"user_id": user_id, "topic_id": topic_id, "marked_at": marked_at},
                index_elements=["user_id", "topic_id"],
                update_fields=["marked_at"],
            )
        )
        return marked_at

    async def mark_all_as_read(self, user_id: int) -> datetime:
        """Move the global marker to now. Topic markers are kept."""
        marked_at = datetime.utcnow()
        await self.db.execute(
            upsert(
                self.db,
                ForumMarkRead,
                {"user_id": user_id, "marked_at": marked_at},
                index_elements=["user_id"],
                update_fields=["marked_at"],
            )
        )
        logger.info(f"User {user_id} marked all topics as read")
        return marked_at

    # ==================== Queries ====================

    def _unread(self, query: Any, user_id: int, board_id: int | None = None) -> Any:
        """Restrict a topic query to topics unread by the user."""
        query = (
            query.outerjoin(
                ForumTopicRead,
                and_(
                    ForumTopicRead.topic_id == ForumTopic.id,
                    ForumTopicRead.user_id == user_id,
                ),
            )
            .outerjoin(ForumMarkRead, ForumMarkRead.user_id == user_id)
            .where(
                ForumTopic.last_message_time.is_not(None),
                or_(
                    ForumTopicRead.marked_at.is_(None),
                    ForumTopic.last_message_time > ForumTopicRead.marked_at,
                ),
                or_(
                    ForumMarkRead.marked_at.is_(None),
                    ForumTopic.last_message_time > ForumMarkRead.marked_at,
                ),
            )
        )
        if board_id is not None:
            query = query.where(ForumTopic.board_id == board_id)
        return query

    async def get_unread_topics(
        self,
        user_id: int,
        board_id: int | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ForumTopic]:
        """
        Get unread topics, most recently active first.

        Args:
            user_id: Member ID
            board_id: Restrict to one board
            limit: Max results
            offset: Skip results

        Returns:
            Unread topics
        """
        query = self._unread(select(ForumTopic), user_id, board_id)
        query = (
            query.order_by(ForumTopic.last_message_time.desc(), ForumTopic.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_unread_count(self, user_id: int, board_id: int | None = None) -> int:
        """Count unread topics."""
        query = self._unread(
            select(func.count(ForumTopic.id)).select_from(ForumTopic), user_id, board_id
        )
        return await self.db.scalar(query) or 0

    async def unread_topic_ids(self, user_id: int, topic_ids: list[int]) -> set[int]:
        """Return which of the given topics are unread."""
        if not topic_ids:
            return set()
        query = self._unread(select(ForumTopic.id), user_id).where(
            ForumTopic.id.in_(topic_ids)
        )
        result = await self.db.execute(query)
        return set(result.scalars().all())

"""
Forum Service - Boards, topics and messages.

Every write keeps the denormalized counters and last-message pointers of
the affected topic and board in step, inside the caller's transaction.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from slugify import slugify
from sqlalchemy import and_, distinct, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.models.forum import ForumBoard, ForumCategory, ForumMessage, ForumTopic
from app.modules.forum.exceptions import (
    ForbiddenError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.pagination import Page, page_offset
from app.modules.forum.permissions import (
    ForumUser,
    PermissionService,
    get_permission_service,
)
from app.modules.forum.polls import PollDraft, PollService


@dataclass
class TopicPage:
    """Topic with one page of its messages."""

    topic: ForumTopic
    board: ForumBoard
    posts: Page[ForumMessage]
    poll_id: int | None


@dataclass
class MessagePosition:
    """Where a message sits inside its topic."""

    message_id: int
    topic_id: int
    position: int
    page: int
    page_size: int


def clean_subject(subject: str | None) -> str:
    subject = (subject or "").strip()
    if not subject:
        raise ForumValidationError("Subject is required")
    if len(subject) > 255:
        raise ForumValidationError("Subject must be at most 255 characters")
    return subject


def clean_body(body: str | None) -> str:
    body = (body or "").strip()
    if not body:
        raise ForumValidationError("Message body is required")
    return body


def make_slug(subject: str) -> str:
    return slugify(subject)[:200] or "topic"


class ForumService:
    """
    Service for managing forum categories, boards, topics, and messages.

    Usage:
        forum = ForumService(db_session)
        topic = await forum.create_topic(board_id, user, "Hello", "World")
    """

    def __init__(
        self,
        db: AsyncSession,
        permissions: PermissionService | None = None,
    ) -> None:
        """Initialize forum service with database session."""
        self.db = db
        self.permissions = permissions or get_permission_service()

    # ==================== Categories & Boards ====================

    async def get_categories(self) -> list[ForumCategory]:
        """Get all categories with their boards."""
        query = (
            select(ForumCategory)
            .options(selectinload(ForumCategory.boards))
            .order_by(ForumCategory.sort_order, ForumCategory.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_category(self, name: str, sort_order: int = 0) -> ForumCategory:
        """Create new forum category."""
        name = (name or "").strip()
        if not name:
            raise ForumValidationError("Category name is required")

        category = ForumCategory(name=name, sort_order=sort_order)
        self.db.add(category)
        await self.db.flush()
        return category

    async def create_board(
        self,
        category_id: int,
        name: str,
        description: str | None = None,
        is_locked: bool = False,
        sort_order: int = 0,
    ) -> ForumBoard:
        """Create new board in a category."""
        name = (name or "").strip()
        if not name:
            raise ForumValidationError("Board name is required")
        if await self.db.get(ForumCategory, category_id) is None:
            raise NotFoundError("Category not found")

        board = ForumBoard(
            category_id=category_id,
            name=name,
            description=description,
            is_locked=is_locked,
            sort_order=sort_order,
            topic_count=0,
            message_count=0,
        )
        self.db.add(board)
        await self.db.flush()
        return board

    async def get_board(self, board_id: int) -> ForumBoard:
        """Get board by ID or raise NotFoundError."""
        result = await self.db.execute(
            select(ForumBoard)
            .where(ForumBoard.id == board_id)
            .execution_options(populate_existing=True)
        )
        board = result.scalar_one_or_none()
        if board is None:
            raise NotFoundError("Board not found")
        return board

    async def get_board_with_topics(
        self,
        board_id: int,
        page: int = 1,
        limit: int | None = None,
    ) -> tuple[ForumBoard, Page[ForumTopic]]:
        """
        Get board and one page of its topics.

        Sticky topics come first, then by last activity, newest first.
        """
        limit = limit or settings.forum_topics_per_page
        offset = page_offset(page, limit)
        board = await self.get_board(board_id)

        query = (
            select(ForumTopic)
            .where(ForumTopic.board_id == board_id)
            .order_by(
                ForumTopic.is_sticky.desc(),
                ForumTopic.last_message_time.desc().nulls_last(),
                ForumTopic.id.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        total = await self.db.scalar(
            select(func.count(ForumTopic.id)).where(ForumTopic.board_id == board_id)
        )

        return board, Page(list(result.scalars().all()), total or 0, page, limit)

    # ==================== Topics ====================

    async def get_topic(self, topic_id: int) -> ForumTopic:
        """Get topic by ID or raise NotFoundError."""
        result = await self.db.execute(
            select(ForumTopic)
            .where(ForumTopic.id == topic_id)
            .execution_options(populate_existing=True)
        )
        topic = result.scalar_one_or_none()
        if topic is None:
            raise NotFoundError("Topic not found")
        return topic

    async def create_topic(
        self,
        board_id: int,
        author: ForumUser,
        subject: str,
        body: str,
        poll: PollDraft | None = None,
    ) -> ForumTopic:
        """
        Create new topic with its first message and optional poll.

        Args:
            board_id: Board ID
            author: Posting user
            subject: Topic subject
            body: First message body
            poll: Optional poll definition

        Returns:
            Created topic
        """
        board = await self.get_board(board_id)
        if not await self.permissions.can_post_in_board(author, board):
            raise ForbiddenError("You cannot post in this board")

        subject = clean_subject(subject)
        body = clean_body(body)
        polls = PollService(self.db)
        if poll is not None:
            poll = polls.validate_draft(poll)

        now = datetime.utcnow()
        topic = ForumTopic(
            board_id=board_id,
            author_id=author.id,
            author_name=author.name,
            subject=subject,
            slug=make_slug(subject),
            is_sticky=False,
            locked=False,
            reply_count=0,
            view_count=0,
            created_at=now,
        )
        self.db.add(topic)
        await self.db.flush()

        message = ForumMessage(
            topic_id=topic.id,
            board_id=board_id,
            author_id=author.id,
            author_name=author.name,
            subject=subject,
            body=body,
            is_first_message=True,
            posted_time=now,
        )
        self.db.add(message)
        await self.db.flush()

        topic.first_message_id = message.id
        topic.last_message_id = message.id
        topic.last_message_time = message.posted_time
        topic.last_poster_name = author.name

        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == board_id)
            .values(
                topic_count=ForumBoard.topic_count + 1,
                message_count=ForumBoard.message_count + 1,
            )
        )
        await self._advance_board_pointer(board_id, message)

        if poll is not None:
            await polls.create_poll(topic.id, author.id, poll)

        await self.db.flush()
        logger.info(f"Topic {topic.id} created in board {board_id} by user {author.id}")
        return topic

    async def get_topic_with_posts(
        self,
        topic_id: int,
        page: int = 1,
        limit: int | None = None,
    ) -> TopicPage:
        """Get topic with one page of messages, oldest first."""
        limit = limit or settings.forum_posts_per_page
        offset = page_offset(page, limit)

        topic = await self.get_topic(topic_id)
        board = await self.get_board(topic.board_id)

        query = (
            select(ForumMessage)
            .where(ForumMessage.topic_id == topic_id)
            .order_by(ForumMessage.posted_time, ForumMessage.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        total = await self.db.scalar(
            select(func.count(ForumMessage.id)).where(ForumMessage.topic_id == topic_id)
        )
        poll_id = await PollService(self.db).get_poll_id_for_topic(topic_id)

        return TopicPage(
            topic=topic,
            board=board,
            posts=Page(list(result.scalars().all()), total or 0, page, limit),
            poll_id=poll_id,
        )

    async def increment_topic_views(self, topic_id: int) -> None:
        """Increment topic view count. Not deduplicated per viewer."""
        result = await self.db.execute(
            update(ForumTopic)
            .where(ForumTopic.id == topic_id)
            .values(view_count=ForumTopic.view_count + 1)
        )
        if result.rowcount == 0:
            raise NotFoundError("Topic not found")

    # ==================== Messages ====================

    async def get_message(self, message_id: int) -> ForumMessage:
        """Get message by ID or raise NotFoundError."""
        message = await self.db.get(ForumMessage, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    async def get_message_page(
        self,
        message_id: int,
        page_size: int | None = None,
    ) -> MessagePosition:
        """
        Find the page of its topic a message is displayed on.

        Position is the 1-based rank by (posted_time, id).
        """
        page_size = page_size or settings.forum_posts_per_page
        page_offset(1, page_size)
        message = await self.get_message(message_id)

        rank = await self.db.scalar(
            select(func.count(ForumMessage.id)).where(
                ForumMessage.topic_id == message.topic_id,
                or_(
                    ForumMessage.posted_time < message.posted_time,
                    and_(
                        ForumMessage.posted_time == message.posted_time,
                        ForumMessage.id <= message.id,
                    ),
                ),
            )
        )

        return MessagePosition(
            message_id=message.id,
            topic_id=message.topic_id,
            position=rank,
            page=math.ceil(rank / page_size),
            page_size=page_size,
        )

    async def create_post(
        self,
        topic_id: int,
        author: ForumUser,
        subject: str | None,
        body: str,
    ) -> ForumMessage:
        """
        Reply to a topic.

        Args:
            topic_id: Topic ID
            author: Posting user
            subject: Reply subject (defaults to "Re: <topic subject>")
            body: Message body

        Returns:
            Created message
        """
        topic = await self.get_topic(topic_id)
        if topic.locked and not author.is_moderator:
            raise ForbiddenError("This topic is locked")

        board = await self.get_board(topic.board_id)
        if not await self.permissions.can_post_in_board(author, board):
            raise ForbiddenError("You cannot post in this board")

        body = clean_body(body)
        subject = (subject or "").strip() or f"Re: {topic.subject}"
        subject = clean_subject(subject[:255])

        message = ForumMessage(
            topic_id=topic.id,
            board_id=topic.board_id,
            author_id=author.id,
            author_name=author.name,
            subject=subject,
            body=body,
            is_first_message=False,
            posted_time=datetime.utcnow(),
        )
        self.db.add(message)
        await self.db.flush()

        await self.db.execute(
            update(ForumTopic)
            .where(ForumTopic.id == topic.id)
            .values(reply_count=ForumTopic.reply_count + 1)
        )
        await self._advance_topic_pointer(topic.id, message)

        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == topic.board_id)
            .values(message_count=ForumBoard.message_count + 1)
        )
        await self._advance_board_pointer(topic.board_id, message)

        logger.info(f"Message {message.id} posted in topic {topic.id} by user {author.id}")
        return message

    async def update_post(
        self,
        message_id: int,
        user: ForumUser,
        body: str,
        subject: str | None = None,
    ) -> ForumMessage:
        """Edit a message (author or moderator)."""
        message = await self.get_message(message_id)
        self._check_owner_or_moderator(message, user, "edit")

        topic = await self.get_topic(message.topic_id)
        if topic.locked and not user.is_moderator:
            raise ForbiddenError("This topic is locked")

        message.body = clean_body(body)
        if subject is not None and subject.strip():
            message.subject = clean_subject(subject)
            if message.is_first_message and topic.subject != message.subject:
                topic.subject = message.subject
                topic.slug = make_slug(message.subject)

        message.modified_time = datetime.utcnow()
        message.modified_name = user.name
        await self.db.flush()
        return message

    async def delete_post(self, message_id: int, user: ForumUser) -> ForumMessage:
        """
        Delete a reply (author or moderator).

        The first message of a topic cannot be deleted on its own.
        """
        message = await self.get_message(message_id)
        self._check_owner_or_moderator(message, user, "delete")

        if message.is_first_message:
            raise ForumValidationError(
                "The first message of a topic cannot be deleted; delete the topic instead"
            )

        topic = await self.get_topic(message.topic_id)
        if topic.locked and not user.is_moderator:
            raise ForbiddenError("This topic is locked")

        await self.db.delete(message)
        await self.db.flush()

        await self.db.execute(
            update(ForumTopic)
            .where(ForumTopic.id == topic.id)
            .values(reply_count=ForumTopic.reply_count - 1)
        )
        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == message.board_id)
            .values(message_count=ForumBoard.message_count - 1)
        )

        if topic.last_message_id == message.id:
            await self.refresh_topic_pointer(topic.id)

        board = await self.get_board(message.board_id)
        if board.last_message_id == message.id:
            await self.refresh_board_pointer(board.id)

        logger.info(f"Message {message.id} deleted from topic {topic.id} by user {user.id}")
        return message

    def _check_owner_or_moderator(
        self,
        message: ForumMessage,
        user: ForumUser,
        action: str,
    ) -> None:
        if message.author_id != user.id and not user.is_moderator:
            raise ForbiddenError(f"You can only {action} your own posts")

    # ==================== Pointers ====================

    async def _advance_topic_pointer(self, topic_id: int, message: ForumMessage) -> None:
        """Point the topic at the message unless it already holds a newer one."""
        await self.db.execute(
            update(ForumTopic)
            .where(
                ForumTopic.id == topic_id,
                or_(
                    ForumTopic.last_message_time.is_(None),
                    ForumTopic.last_message_time <= message.posted_time,
                ),
            )
            .values(
                last_message_id=message.id,
                last_message_time=message.posted_time,
                last_poster_name=message.author_name,
            )
            .execution_options(synchronize_session="fetch")
        )

    async def _advance_board_pointer(self, board_id: int, message: ForumMessage) -> None:
        """Point the board at the message unless it already holds a newer one."""
        await self.db.execute(
            update(ForumBoard)
            .where(
                ForumBoard.id == board_id,
                or_(
                    ForumBoard.last_message_time.is_(None),
                    ForumBoard.last_message_time <= message.posted_time,
                ),
            )
            .values(
                last_message_id=message.id,
                last_message_time=message.posted_time,
                last_poster_name=message.author_name,
            )
            .execution_options(synchronize_session="fetch")
        )

    async def _latest_message(self, *criteria: Any) -> ForumMessage | None:
        query = (
            select(ForumMessage)
            .where(*criteria)
            .order_by(ForumMessage.posted_time.desc(), ForumMessage.id.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def refresh_topic_pointer(self, topic_id: int) -> None:
        """Recompute a topic's last-message pointer from its messages."""
        last = await self._latest_message(ForumMessage.topic_id == topic_id)
        await self.db.execute(
            update(ForumTopic)
            .where(ForumTopic.id == topic_id)
            .values(
                last_message_id=last.id if last else None,
                last_message_time=last.posted_time if last else None,
                last_poster_name=last.author_name if last else None,
            )
        )

    async def refresh_board_pointer(self, board_id: int) -> None:
        """Recompute a board's last-message pointer from its messages."""
        last = await self._latest_message(ForumMessage.board_id == board_id)
        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == board_id)
            .values(
                last_message_id=last.id if last else None,
                last_message_time=last.posted_time if last else None,
                last_poster_name=last.author_name if last else None,
            )
        )

    # ==================== Activity ====================

    async def get_latest_topics(
        self,
        limit: int = 10,
        offset: int = 0,
        board_id: int | None = None,
    ) -> tuple[list[tuple[ForumTopic, ForumMessage | None, str]], int]:
        """
        Get topics with the most recent activity.

        Returns:
            (topic, last message, board name) rows and the total topic count
        """
        query = (
            select(ForumTopic, ForumMessage, ForumBoard.name)
            .join(ForumBoard, ForumBoard.id == ForumTopic.board_id)
            .outerjoin(ForumMessage, ForumMessage.id == ForumTopic.last_message_id)
        )
        count_query = select(func.count(ForumTopic.id))
        if board_id is not None:
            query = query.where(ForumTopic.board_id == board_id)
            count_query = count_query.where(ForumTopic.board_id == board_id)

        query = (
            query.order_by(
                ForumTopic.last_message_time.desc().nulls_last(), ForumTopic.id.desc()
            )
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        total = await self.db.scalar(count_query)
        return [tuple(row) for row in result.all()], total or 0

    async def get_forum_stats(self) -> dict[str, int]:
        """Get totals of boards, topics and messages."""
        boards = await self.db.scalar(select(func.count(ForumBoard.id)))
        topics = await self.db.scalar(select(func.count(ForumTopic.id)))
        messages = await self.db.scalar(select(func.count(ForumMessage.id)))
        posters = await self.db.scalar(
            select(func.count(distinct(ForumMessage.author_id)))
        )
        return {
            "boards": boards or 0,
            "topics": topics or 0,
            "messages": messages or 0,
            "posters": posters or 0,
        }

    async def get_user_recent_activity(
        self,
        user_id: int,
        limit: int = 10,
    ) -> list[tuple[ForumMessage, ForumTopic, str]]:
        """Get a member's latest messages with topic and board name."""
        query = (
            select(ForumMessage, ForumTopic, ForumBoard.name)
            .join(ForumTopic, ForumTopic.id == ForumMessage.topic_id)
            .join(ForumBoard, ForumBoard.id == ForumMessage.board_id)
            .where(ForumMessage.author_id == user_id)
            .order_by(ForumMessage.posted_time.desc(), ForumMessage.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return [tuple(row) for row in result.all()]

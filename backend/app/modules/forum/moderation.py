"""
Moderation Service - Reports and topic management.

Reports move one way, open to closed. Topic lock, sticky and move are
moderator-only; a move re-homes the topic's messages and transfers board
counters in the same transaction.
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.forum import (
    ForumBoard,
    ForumMessage,
    ForumReport,
    ForumTopic,
    ReportStatus,
)
from app.modules.forum.exceptions import (
    ConflictError,
    ForbiddenError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.permissions import (
    ForumUser,
    PermissionService,
    get_permission_service,
)
from app.modules.forum.service import ForumService


def require_moderator(user: ForumUser) -> None:
    if not user.is_moderator:
        raise ForbiddenError("Moderator permissions required")


class ModerationService:
    """
    Service for message reports and moderator topic actions.

    Usage:
        moderation = ModerationService(db_session)
        report = await moderation.report_message(message_id, user, "spam content")
        await moderation.close_report(report.id, moderator)
    """

    def __init__(
        self,
        db: AsyncSession,
        permissions: PermissionService | None = None,
    ) -> None:
        """Initialize moderation service with database session."""
        self.db = db
        self.permissions = permissions or get_permission_service()

    # ==================== Reports ====================

    async def report_message(
        self,
        message_id: int,
        reporter: ForumUser,
        comment: str,
    ) -> ForumReport:
        """
        Report a message to moderators.

        The message is copied into the report so it survives later edits
        or deletion.

        Args:
            message_id: Reported message ID
            reporter: Reporting member
            comment: Reason given by the reporter

        Returns:
            Created report
        """
        comment = (comment or "").strip()
        min_length = settings.forum_report_min_length
        max_length = settings.forum_report_max_length
        if not min_length <= len(comment) <= max_length:
            raise ForumValidationError(
                f"Report comment must be between {min_length} and {max_length} characters"
            )

        message = await self.db.get(ForumMessage, message_id)
        if message is None:
            raise NotFoundError("Message not found")

        duplicate = await self.db.scalar(
            select(ForumReport.id).where(
                ForumReport.message_id == message_id,
                ForumReport.reporter_id == reporter.id,
                ForumReport.status == ReportStatus.OPEN,
            )
        )
        if duplicate is not None:
            raise ConflictError("You have already reported this message")

        report = ForumReport(
            message_id=message.id,
            topic_id=message.topic_id,
            board_id=message.board_id,
            reporter_id=reporter.id,
            reporter_name=reporter.name,
            comment=comment,
            message_subject=message.subject,
            message_body=message.body,
            message_author_id=message.author_id,
            message_author_name=message.author_name,
            message_posted_time=message.posted_time,
            status=ReportStatus.OPEN,
            created_at=datetime.utcnow(),
        )
        self.db.add(report)
        await self.db.flush()

        logger.info(f"Report {report.id} filed on message {message_id} by user {reporter.id}")
        return report

    async def get_reports(
        self,
        user: ForumUser,
        status: ReportStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ForumReport], int]:
        """
        Get reports, newest first.

        Returns:
            Page of reports and the total matching count
        """
        require_moderator(user)

        query = select(ForumReport)
        count_query = select(func.count(ForumReport.id))
        if status is not None:
            query = query.where(ForumReport.status == status)
            count_query = count_query.where(ForumReport.status == status)

        query = (
            query.order_by(ForumReport.created_at.desc(), ForumReport.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        total = await self.db.scalar(count_query)
        return list(result.scalars().all()), total or 0

    async def get_report(self, report_id: int, user: ForumUser) -> ForumReport:
        """Get report by ID."""
        require_moderator(user)

        result = await self.db.execute(
            select(ForumReport)
            .where(ForumReport.id == report_id)
            .execution_options(populate_existing=True)
        )
        report = result.scalar_one_or_none()
        if report is None:
            raise NotFoundError("Report not found")
        return report

    async def get_reports_count(self, user: ForumUser) -> dict[str, int]:
        """Count reports per status."""
        require_moderator(user)

        result = await self.db.execute(
            select(ForumReport.status, func.count(ForumReport.id)).group_by(
                ForumReport.status
            )
        )
        counts = {status.value: 0 for status in ReportStatus}
        for status, count in result.all():
            counts[ReportStatus(status).value] = count
        counts["total"] = sum(counts.values())
        return counts

    async def close_report(self, report_id: int, user: ForumUser) -> ForumReport:
        """
        Close an open report.

        The status change is a conditional update, so of two concurrent
        closes exactly one succeeds and the other gets ConflictError.
        """
        require_moderator(user)

        result = await self.db.execute(
            update(ForumReport)
            .where(ForumReport.id == report_id, ForumReport.status == ReportStatus.OPEN)
            .values(
                status=ReportStatus.CLOSED,
                closed_by=user.id,
                closed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if await self.db.get(ForumReport, report_id) is None:
                raise NotFoundError("Report not found")
            raise ConflictError("Report is already closed")

        logger.info(f"Report {report_id} closed by moderator {user.id}")
        return await self.get_report(report_id, user)

    # ==================== Topics ====================

    async def _get_topic(self, topic_id: int, for_update: bool = False) -> ForumTopic:
        query = select(ForumTopic).where(ForumTopic.id == topic_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        topic = result.scalar_one_or_none()
        if topic is None:
            raise NotFoundError("Topic not found")
        return topic

    async def lock_topic(self, topic_id: int, locked: bool, user: ForumUser) -> ForumTopic:
        """Lock or unlock a topic. Existing messages are untouched."""
        require_moderator(user)

        topic = await self._get_topic(topic_id)
        topic.locked = locked
        await self.db.flush()

        logger.info(f"Topic {topic_id} {'locked' if locked else 'unlocked'} by {user.id}")
        return topic

    async def set_sticky(self, topic_id: int, sticky: bool, user: ForumUser) -> ForumTopic:
        """Pin or unpin a topic at the top of its board."""
        require_moderator(user)

        topic = await self._get_topic(topic_id)
        topic.is_sticky = sticky
        await self.db.flush()

        logger.info(f"Topic {topic_id} sticky={sticky} by {user.id}")
        return topic

    async def move_topic(
        self,
        topic_id: int,
        target_board_id: int,
        user: ForumUser,
    ) -> ForumTopic:
        """
        Move a topic to another board.

        Locks the topic, then both boards in id order. Messages follow the
        topic, counters are transferred, and both boards' last-message
        pointers are recomputed.

        Args:
            topic_id: Topic to move
            target_board_id: Destination board
            user: Acting moderator

        Returns:
            Moved topic
        """
        require_moderator(user)

        topic = await self._get_topic(topic_id, for_update=True)
        source_board_id = topic.board_id
        if source_board_id == target_board_id:
            raise ForumValidationError("Topic is already in this board")

        result = await self.db.execute(
            select(ForumBoard)
            .where(ForumBoard.id.in_([source_board_id, target_board_id]))
            .order_by(ForumBoard.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        boards = {board.id: board for board in result.scalars().all()}
        if target_board_id not in boards:
            raise NotFoundError("Target board not found")

        message_count = await self.db.scalar(
            select(func.count(ForumMessage.id)).where(ForumMessage.topic_id == topic_id)
        )

        await self.db.execute(
            update(ForumMessage)
            .where(ForumMessage.topic_id == topic_id)
            .values(board_id=target_board_id)
        )
        topic.board_id = target_board_id
        await self.db.flush()

        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == source_board_id)
            .values(
                topic_count=ForumBoard.topic_count - 1,
                message_count=ForumBoard.message_count - message_count,
            )
        )
        await self.db.execute(
            update(ForumBoard)
            .where(ForumBoard.id == target_board_id)
            .values(
                topic_count=ForumBoard.topic_count + 1,
                message_count=ForumBoard.message_count + message_count,
            )
        )

        forum = ForumService(self.db, self.permissions)
        await forum.refresh_board_pointer(source_board_id)
        await forum.refresh_board_pointer(target_board_id)

        logger.info(
            f"Topic {topic_id} moved from board {source_board_id} "
            f"to board {target_board_id} by {user.id}"
        )
        return topic

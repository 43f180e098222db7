"""
Reconciliation Job - Repair of denormalized forum data.

Recomputes every counter and last-message pointer from the source rows and
writes back only the values that differ. Running it twice in a row on
quiescent data changes nothing the second time. It takes no locks; a row
touched by a live writer mid-run is picked up by the next run.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import Database
from app.models.forum import (
    ForumBoard,
    ForumMessage,
    ForumPollChoice,
    ForumPollVote,
    ForumTopic,
)


@dataclass
class ReconciliationReport:
    """Number of rows changed, per kind."""

    messages_realigned: int = 0
    topics_updated: int = 0
    boards_updated: int = 0
    choices_updated: int = 0

    @property
    def total_changes(self) -> int:
        return (
            self.messages_realigned
            + self.topics_updated
            + self.boards_updated
            + self.choices_updated
        )

    def to_dict(self) -> dict[str, int]:
        return {**asdict(self), "total_changes": self.total_changes}


@dataclass
class _Extremes:
    count: int = 0
    first_id: int | None = None
    last_id: int | None = None
    last_time: datetime | None = None
    last_poster: str | None = None

    def pointer(self) -> dict[str, Any]:
        return {
            "last_message_id": self.last_id,
            "last_message_time": self.last_time,
            "last_poster_name": self.last_poster,
        }


class ReconciliationService:
    """
    Full recompute of counters and pointers.

    Usage:
        report = await ReconciliationService(db_session).fix_message_pointers()
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def fix_message_pointers(self) -> ReconciliationReport:
        """
        Recompute counters and pointers of all topics, boards and poll choices.

        Returns:
            How many rows of each kind were rewritten
        """
        report = ReconciliationReport()

        report.messages_realigned = await self._realign_message_boards()
        report.topics_updated = await self._fix_topics()
        report.boards_updated = await self._fix_boards()
        report.choices_updated = await self._fix_poll_choices()

        await self.db.flush()
        logger.info(f"Forum reconciliation finished: {report.to_dict()}")
        return report

    async def _realign_message_boards(self) -> int:
        """A message always lives in its topic's board."""
        topic_board = (
            select(ForumTopic.board_id)
            .where(ForumTopic.id == ForumMessage.topic_id)
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(ForumMessage)
            .where(ForumMessage.board_id != topic_board)
            .values(board_id=topic_board)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _extremes(self, scope: Any) -> dict[int, _Extremes]:
        """
        Message count, earliest and latest message per scope column.

        Latest is by (posted_time, id), so equal timestamps go to the
        higher id.
        """
        ranked = select(
            scope.label("scope_id"),
            ForumMessage.id,
            ForumMessage.posted_time,
            ForumMessage.author_name,
            func.row_number()
            .over(
                partition_by=scope,
                order_by=(ForumMessage.posted_time.desc(), ForumMessage.id.desc()),
            )
            .label("newest_rank"),
            func.row_number()
            .over(partition_by=scope, order_by=(ForumMessage.posted_time, ForumMessage.id))
            .label("oldest_rank"),
            func.count().over(partition_by=scope).label("total"),
        ).subquery()

        result = await self.db.execute(
            select(ranked).where((ranked.c.newest_rank == 1) | (ranked.c.oldest_rank == 1))
        )

        extremes: dict[int, _Extremes] = {}
        for row in result.mappings():
            entry = extremes.setdefault(row["scope_id"], _Extremes(count=row["total"]))
            if row["oldest_rank"] == 1:
                entry.first_id = row["id"]
            if row["newest_rank"] == 1:
                entry.last_id = row["id"]
                entry.last_time = row["posted_time"]
                entry.last_poster = row["author_name"]
        return extremes

    async def _fix_topics(self) -> int:
        extremes = await self._extremes(ForumMessage.topic_id)
        result = await self.db.execute(
            select(
                ForumTopic.id,
                ForumTopic.reply_count,
                ForumTopic.first_message_id,
                ForumTopic.last_message_id,
                ForumTopic.last_message_time,
                ForumTopic.last_poster_name,
            )
        )

        updated = 0
        for row in result.mappings().all():
            actual = extremes.get(row["id"], _Extremes())
            expected = {
                "reply_count": max(actual.count - 1, 0),
                "first_message_id": actual.first_id,
                **actual.pointer(),
            }
            changes = {key: value for key, value in expected.items() if row[key] != value}
            if changes:
                await self.db.execute(
                    update(ForumTopic)
                    .where(ForumTopic.id == row["id"])
                    .values(**changes)
                )
                logger.debug(f"Topic {row['id']} repaired: {sorted(changes)}")
                updated += 1
        return updated

    async def _fix_boards(self) -> int:
        extremes = await self._extremes(ForumMessage.board_id)
        topic_counts = dict(
            (
                await self.db.execute(
                    select(ForumTopic.board_id, func.count(ForumTopic.id)).group_by(
                        ForumTopic.board_id
                    )
                )
            ).all()
        )
        result = await self.db.execute(
            select(
                ForumBoard.id,
                ForumBoard.topic_count,
                ForumBoard.message_count,
                ForumBoard.last_message_id,
                ForumBoard.last_message_time,
                ForumBoard.last_poster_name,
            )
        )

        updated = 0
        for row in result.mappings().all():
            actual = extremes.get(row["id"], _Extremes())
            expected = {
                "topic_count": topic_counts.get(row["id"], 0),
                "message_count": actual.count,
                **actual.pointer(),
            }
            changes = {key: value for key, value in expected.items() if row[key] != value}
            if changes:
                await self.db.execute(
                    update(ForumBoard)
                    .where(ForumBoard.id == row["id"])
                    .values(**changes)
                )
                logger.debug(f"Board {row['id']} repaired: {sorted(changes)}")
                updated += 1
        return updated

    async def _fix_poll_choices(self) -> int:
        vote_counts = dict(
            (
                await self.db.execute(
                    select(ForumPollVote.choice_id, func.count(ForumPollVote.id)).group_by(
                        ForumPollVote.choice_id
                    )
                )
            ).all()
        )
        result = await self.db.execute(select(ForumPollChoice.id, ForumPollChoice.vote_count))

        updated = 0
        for choice_id, vote_count in result.all():
            expected = vote_counts.get(choice_id, 0)
            if vote_count != expected:
                await self.db.execute(
                    update(ForumPollChoice)
                    .where(ForumPollChoice.id == choice_id)
                    .values(vote_count=expected)
                )
                updated += 1
        return updated


async def run_reconciliation(db: Database) -> ReconciliationReport | None:
    """
    Run reconciliation in its own transaction.

    Used for out-of-band runs; failures are logged, never raised.
    """
    if db.session_factory is None:
        await db.connect()

    try:
        async with db.session_factory() as session:
            async with session.begin():
                return await ReconciliationService(session).fix_message_pointers()
    except Exception as e:
        logger.error(f"Forum reconciliation failed: {e}")
        return None

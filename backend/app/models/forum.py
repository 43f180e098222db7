"""
Forum models for community discussions.

Includes:
- Categories and boards (sections)
- Topics (threads) and messages (posts)
- Polls, poll choices and votes
- Read markers (global and per topic)
- Message reports
- Online log (presence)

Counters and "last message" columns on boards and topics are denormalized
and maintained by the services inside the writing transaction.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


class ReportStatus(str, PyEnum):
    """Report lifecycle status. Transition is one-way."""

    OPEN = "open"
    CLOSED = "closed"


class HideResults(int, PyEnum):
    """When poll results are visible."""

    ALWAYS = 0
    AFTER_VOTE = 1
    AFTER_EXPIRY = 2


class ForumCategory(Base):
    """Forum category grouping boards."""

    __tablename__ = "forum_categories"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    boards: Mapped[list["ForumBoard"]] = relationship(
        back_populates="category", order_by="ForumBoard.sort_order"
    )

    def __repr__(self) -> str:
        return f"<ForumCategory {self.name}>"


class ForumBoard(Base):
    """Forum board (section) containing topics."""

    __tablename__ = "forum_boards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("forum_categories.id"))
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    # Only moderators may post when set
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)

    # Stats (denormalized for performance)
    topic_count: Mapped[int] = mapped_column(Integer, default=0)
    message_count: Mapped[int] = mapped_column(Integer, default=0)

    # Last activity
    last_message_id: Mapped[int | None] = mapped_column(Integer)
    last_message_time: Mapped[datetime | None] = mapped_column(DateTime)
    last_poster_name: Mapped[str | None] = mapped_column(String(255))

    # Relationships
    category: Mapped["ForumCategory"] = relationship(back_populates="boards")

    def __repr__(self) -> str:
        return f"<ForumBoard {self.name}>"


class ForumTopic(Base):
    """Forum topic (thread), rooted at its first message."""

    __tablename__ = "forum_topics"
    __table_args__ = (
        Index("ix_forum_topics_board_activity", "board_id", "last_message_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    board_id: Mapped[int] = mapped_column(ForeignKey("forum_boards.id"), index=True)
    author_id: Mapped[int] = mapped_column(Integer, index=True)
    author_name: Mapped[str] = mapped_column(String(255))

    subject: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(255), index=True)

    # Status
    is_sticky: Mapped[bool] = mapped_column(Boolean, default=False)
    locked: Mapped[bool] = mapped_column(Boolean, default=False)

    # Stats
    reply_count: Mapped[int] = mapped_column(Integer, default=0)
    view_count: Mapped[int] = mapped_column(Integer, default=0)

    # Message pointers
    first_message_id: Mapped[int | None] = mapped_column(Integer)
    last_message_id: Mapped[int | None] = mapped_column(Integer)
    last_message_time: Mapped[datetime | None] = mapped_column(DateTime)
    last_poster_name: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ForumTopic {self.subject[:30]}>"


class ForumMessage(Base):
    """Single post within a topic."""

    __tablename__ = "forum_messages"
    __table_args__ = (
        Index("ix_forum_messages_topic_time", "topic_id", "posted_time"),
        Index("ix_forum_messages_board_time", "board_id", "posted_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    topic_id: Mapped[int] = mapped_column(ForeignKey("forum_topics.id"))
    # Denormalized from the topic for direct board lookups
    board_id: Mapped[int] = mapped_column(ForeignKey("forum_boards.id"))
    author_id: Mapped[int] = mapped_column(Integer, index=True)
    author_name: Mapped[str] = mapped_column(String(255))

    subject: Mapped[str] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text)
    is_first_message: Mapped[bool] = mapped_column(Boolean, default=False)

    posted_time: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    modified_time: Mapped[datetime | None] = mapped_column(DateTime)
    modified_name: Mapped[str | None] = mapped_column(String(255))

    def __repr__(self) -> str:
        return f"<ForumMessage {self.id} in topic {self.topic_id}>"


class ForumPoll(Base):
    """Poll attached to a topic's first message."""

    __tablename__ = "forum_polls"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    topic_id: Mapped[int] = mapped_column(ForeignKey("forum_topics.id"), unique=True)
    author_id: Mapped[int] = mapped_column(Integer)

    question: Mapped[str] = mapped_column(String(255))
    max_votes: Mapped[int] = mapped_column(Integer, default=1)
    expire_time: Mapped[datetime | None] = mapped_column(DateTime)
    hide_results: Mapped[int] = mapped_column(Integer, default=HideResults.ALWAYS)
    change_vote: Mapped[bool] = mapped_column(Boolean, default=False)
    guest_vote: Mapped[bool] = mapped_column(Boolean, default=False)
    voting_locked: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    choices: Mapped[list["ForumPollChoice"]] = relationship(
        back_populates="poll", order_by="ForumPollChoice.sort_order"
    )

    @property
    def is_expired(self) -> bool:
        return self.expire_time is not None and self.expire_time <= datetime.utcnow()

    def __repr__(self) -> str:
        return f"<ForumPoll {self.id} on topic {self.topic_id}>"


class ForumPollChoice(Base):
    """Poll choice with denormalized vote count."""

    __tablename__ = "forum_poll_choices"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    poll_id: Mapped[int] = mapped_column(ForeignKey("forum_polls.id"), index=True)
    label: Mapped[str] = mapped_column(String(255))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    vote_count: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    poll: Mapped["ForumPoll"] = relationship(back_populates="choices")


class ForumPollVote(Base):
    """
    One chosen choice of one voter.

    voter_key is "member:<id>" for members and "guest:<session or ip>" for
    guests.
    """

    __tablename__ = "forum_poll_votes"
    __table_args__ = (
        UniqueConstraint("poll_id", "voter_key", "choice_id", name="uq_poll_vote"),
        Index("ix_forum_poll_votes_voter", "poll_id", "voter_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    poll_id: Mapped[int] = mapped_column(ForeignKey("forum_polls.id"))
    choice_id: Mapped[int] = mapped_column(ForeignKey("forum_poll_choices.id"))
    member_id: Mapped[int | None] = mapped_column(Integer)
    voter_key: Mapped[str] = mapped_column(String(160))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ForumMarkRead(Base):
    """Global "mark everything read" watermark of a user."""

    __tablename__ = "forum_mark_read"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    marked_at: Mapped[datetime] = mapped_column(DateTime)


class ForumTopicRead(Base):
    """Per-topic read watermark of a user."""

    __tablename__ = "forum_topic_reads"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    topic_id: Mapped[int] = mapped_column(
        ForeignKey("forum_topics.id"), primary_key=True, autoincrement=False
    )
    marked_at: Mapped[datetime] = mapped_column(DateTime)


class ForumReport(Base):
    """Report of a message, with a snapshot of the reported content."""

    __tablename__ = "forum_reports"
    __table_args__ = (
        Index("ix_forum_reports_status_created", "status", "created_at"),
        Index("ix_forum_reports_reporter_message", "reporter_id", "message_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[int | None] = mapped_column(
        ForeignKey("forum_messages.id", ondelete="SET NULL")
    )
    topic_id: Mapped[int] = mapped_column(Integer)
    board_id: Mapped[int] = mapped_column(Integer)

    reporter_id: Mapped[int] = mapped_column(Integer)
    reporter_name: Mapped[str] = mapped_column(String(255))
    comment: Mapped[str] = mapped_column(Text)

    # Snapshot
    message_subject: Mapped[str] = mapped_column(String(255))
    message_body: Mapped[str] = mapped_column(Text)
    message_author_id: Mapped[int] = mapped_column(Integer)
    message_author_name: Mapped[str] = mapped_column(String(255))
    message_posted_time: Mapped[datetime] = mapped_column(DateTime)

    status: Mapped[ReportStatus] = mapped_column(
        Enum(ReportStatus, native_enum=False, length=16), default=ReportStatus.OPEN
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    closed_by: Mapped[int | None] = mapped_column(Integer)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<ForumReport {self.id} ({self.status.value})>"


class ForumOnline(Base):
    """Last activity of a session, swept after the presence window."""

    __tablename__ = "forum_log_online"

    session: Mapped[str] = mapped_column(String(128), primary_key=True)
    member_id: Mapped[int] = mapped_column(Integer, default=0, index=True)
    member_name: Mapped[str | None] = mapped_column(String(255))
    ip: Mapped[str | None] = mapped_column(String(45))
    action: Mapped[str] = mapped_column(Text, default="{}")
    log_time: Mapped[datetime] = mapped_column(DateTime, index=True)

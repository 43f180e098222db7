"""
Poll Service - Topic polls, choices and votes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.forum import ForumPoll, ForumPollChoice, ForumPollVote, HideResults
from app.modules.forum.exceptions import (
    ConflictError,
    ForbiddenError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.permissions import ForumUser

MAX_CHOICES = 256
MAX_VOTES_LIMIT = 255


@dataclass
class PollDraft:
    """Poll definition submitted together with a new topic."""

    question: str
    choices: list[str]
    max_votes: int = 1
    expire_time: datetime | None = None
    hide_results: int = HideResults.ALWAYS
    change_vote: bool = False
    guest_vote: bool = False


@dataclass
class PollChoiceView:
    id: int
    label: str
    votes: int | None
    percentage: float | None
    is_user_choice: bool


@dataclass
class PollView:
    """Poll as seen by one requester; counts are None when hidden."""

    id: int
    topic_id: int
    question: str
    max_votes: int
    expire_time: datetime | None
    hide_results: int
    change_vote: bool
    guest_vote: bool
    voting_locked: bool
    total_votes: int | None
    total_voters: int | None
    user_voted: bool
    can_vote: bool
    is_expired: bool
    results_visible: bool
    choices: list[PollChoiceView] = field(default_factory=list)
    user_choices: list[int] = field(default_factory=list)


def _naive_utc(value: datetime | None) -> datetime | None:
    """Stored datetimes are naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class PollService:
    """
    Service for polls attached to topics.

    Usage:
        polls = PollService(db_session)
        view = await polls.vote_poll(poll_id, user, [choice_id])
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize poll service with database session."""
        self.db = db

    # ==================== Creation ====================

    def validate_draft(self, draft: PollDraft) -> PollDraft:
        """
        Check and normalize a poll draft.

        Raises:
            ForumValidationError: Blank question, fewer than 2 choices,
                max_votes out of range, bad hide mode or past expiry
        """
        question = (draft.question or "").strip()
        if not question:
            raise ForumValidationError("Poll question is required")
        if len(question) > 255:
            raise ForumValidationError("Poll question is too long")

        labels = [label.strip() for label in draft.choices]
        if any(not label for label in labels):
            raise ForumValidationError("Poll choices cannot be blank")
        if len(labels) < 2:
            raise ForumValidationError("A poll needs at least 2 choices")
        if len(labels) > MAX_CHOICES:
            raise ForumValidationError(f"A poll can have at most {MAX_CHOICES} choices")

        if not 1 <= draft.max_votes <= min(len(labels), MAX_VOTES_LIMIT):
            raise ForumValidationError(
                f"max_votes must be between 1 and {min(len(labels), MAX_VOTES_LIMIT)}"
            )

        if draft.hide_results not in {mode.value for mode in HideResults}:
            raise ForumValidationError("hide_results must be 0, 1 or 2")

        expire_time = _naive_utc(draft.expire_time)
        if expire_time is not None and expire_time <= datetime.utcnow():
            raise ForumValidationError("Poll expiry must be in the future")
        if draft.hide_results == HideResults.AFTER_EXPIRY and expire_time is None:
            raise ForumValidationError("Results shown after expiry need an expiry time")

        return PollDraft(
            question=question,
            choices=labels,
            max_votes=draft.max_votes,
            expire_time=expire_time,
            hide_results=int(draft.hide_results),
            change_vote=draft.change_vote,
            guest_vote=draft.guest_vote,
        )

    async def create_poll(
        self,
        topic_id: int,
        author_id: int,
        draft: PollDraft,
    ) -> ForumPoll:
        """
        Attach a poll to a topic.

        Runs inside the caller's transaction (topic creation).
        """
        draft = self.validate_draft(draft)

        poll = ForumPoll(
            topic_id=topic_id,
            author_id=author_id,
            question=draft.question,
            max_votes=draft.max_votes,
            expire_time=draft.expire_time,
            hide_results=draft.hide_results,
            change_vote=draft.change_vote,
            guest_vote=draft.guest_vote,
            voting_locked=False,
        )
        self.db.add(poll)
        await self.db.flush()

        self.db.add_all(
            ForumPollChoice(poll_id=poll.id, label=label, sort_order=index, vote_count=0)
            for index, label in enumerate(draft.choices)
        )
        await self.db.flush()
        return poll

    # ==================== Queries ====================

    async def _get_poll(self, poll_id: int, for_update: bool = False) -> ForumPoll:
        query = select(ForumPoll).where(ForumPoll.id == poll_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        poll = result.scalar_one_or_none()
        if poll is None:
            raise NotFoundError("Poll not found")
        return poll

    async def _get_choices(self, poll_id: int) -> list[ForumPollChoice]:
        query = (
            select(ForumPollChoice)
            .where(ForumPollChoice.poll_id == poll_id)
            .order_by(ForumPollChoice.sort_order, ForumPollChoice.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _voter_choices(self, poll_id: int, voter_key: str) -> list[int]:
        query = select(ForumPollVote.choice_id).where(
            ForumPollVote.poll_id == poll_id,
            ForumPollVote.voter_key == voter_key,
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_poll_id_for_topic(self, topic_id: int) -> int | None:
        result = await self.db.execute(
            select(ForumPoll.id).where(ForumPoll.topic_id == topic_id)
        )
        return result.scalar_one_or_none()

    async def get_poll(
        self,
        poll_id: int,
        user: ForumUser | None = None,
        guest_key: str | None = None,
    ) -> PollView:
        """
        Get poll with results filtered by its visibility mode.

        Args:
            poll_id: Poll ID
            user: Requesting member, None for guests
            guest_key: Session or IP of a guest requester

        Returns:
            Poll view for this requester
        """
        poll = await self._get_poll(poll_id)
        choices = await self._get_choices(poll.id)

        voter_key = _voter_key(user, guest_key)
        user_choices = await self._voter_choices(poll.id, voter_key) if voter_key else []
        user_voted = bool(user_choices)
        is_moderator = user is not None and user.is_moderator
        is_expired = poll.is_expired

        if poll.hide_results == HideResults.AFTER_VOTE:
            results_visible = user_voted or is_moderator
        elif poll.hide_results == HideResults.AFTER_EXPIRY:
            results_visible = is_expired or is_moderator
        else:
            results_visible = True

        can_vote = (
            not poll.voting_locked
            and not is_expired
            and (user is not None or (poll.guest_vote and guest_key is not None))
            and (not user_voted or poll.change_vote)
        )

        total_votes = sum(choice.vote_count for choice in choices)
        total_voters = await self.db.scalar(
            select(func.count(distinct(ForumPollVote.voter_key))).where(
                ForumPollVote.poll_id == poll.id
            )
        )

        choice_views = []
        for choice in choices:
            if results_visible:
                votes = choice.vote_count
                percentage = round(votes * 100 / total_votes, 1) if total_votes else 0.0
            else:
                votes = None
                percentage = None
            choice_views.append(
                PollChoiceView(
                    id=choice.id,
                    label=choice.label,
                    votes=votes,
                    percentage=percentage,
                    is_user_choice=choice.id in user_choices,
                )
            )

        return PollView(
            id=poll.id,
            topic_id=poll.topic_id,
            question=poll.question,
            max_votes=poll.max_votes,
            expire_time=poll.expire_time,
            hide_results=poll.hide_results,
            change_vote=poll.change_vote,
            guest_vote=poll.guest_vote,
            voting_locked=poll.voting_locked,
            total_votes=total_votes if results_visible else None,
            total_voters=total_voters if results_visible else None,
            user_voted=user_voted,
            can_vote=can_vote,
            is_expired=is_expired,
            results_visible=results_visible,
            choices=choice_views,
            user_choices=sorted(user_choices),
        )

    # ==================== Voting ====================

    async def vote_poll(
        self,
        poll_id: int,
        user: ForumUser | None,
        choice_ids: list[int],
        guest_key: str | None = None,
    ) -> PollView:
        """
        Cast or replace a vote set.

        The poll row stays locked from the "already voted" check until the
        transaction commits, so concurrent votes of one voter serialize.

        Args:
            poll_id: Poll ID
            user: Voting member, None for a guest
            choice_ids: Selected choice IDs
            guest_key: Session or IP identifying a guest voter

        Returns:
            Updated poll view
        """
        poll = await self._get_poll(poll_id, for_update=True)

        if poll.voting_locked:
            raise ForbiddenError("Voting is locked for this poll")
        if poll.is_expired:
            raise ForbiddenError("This poll has expired")
        if user is None:
            if not poll.guest_vote:
                raise ForbiddenError("Guests cannot vote in this poll")
            if not guest_key:
                raise ForbiddenError("Guest identity could not be determined")

        selected = list(dict.fromkeys(choice_ids))
        if len(selected) != len(choice_ids):
            raise ForumValidationError("The same choice was selected twice")
        if not 1 <= len(selected) <= poll.max_votes:
            raise ForumValidationError(f"Select between 1 and {poll.max_votes} choices")

        valid_ids = {choice.id for choice in await self._get_choices(poll.id)}
        if not set(selected) <= valid_ids:
            raise ForumValidationError("Choice does not belong to this poll")

        voter_key = _voter_key(user, guest_key)
        previous = await self._voter_choices(poll.id, voter_key)

        if previous:
            if not poll.change_vote:
                raise ConflictError("You have already voted in this poll")

            await self.db.execute(
                delete(ForumPollVote).where(
                    ForumPollVote.poll_id == poll.id,
                    ForumPollVote.voter_key == voter_key,
                )
            )
            await self.db.execute(
                update(ForumPollChoice)
                .where(ForumPollChoice.id.in_(previous))
                .values(vote_count=ForumPollChoice.vote_count - 1)
            )

        self.db.add_all(
            ForumPollVote(
                poll_id=poll.id,
                choice_id=choice_id,
                member_id=user.id if user else None,
                voter_key=voter_key,
            )
            for choice_id in selected
        )
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConflictError("You have already voted in this poll") from e

        await self.db.execute(
            update(ForumPollChoice)
            .where(ForumPollChoice.id.in_(selected))
            .values(vote_count=ForumPollChoice.vote_count + 1)
        )

        logger.info(
            f"Vote on poll {poll.id} by {voter_key}: {selected}"
            + (f" (replaced {sorted(previous)})" if previous else "")
        )
        return await self.get_poll(poll.id, user, guest_key)

    async def set_voting_locked(
        self,
        poll_id: int,
        locked: bool,
        user: ForumUser,
    ) -> ForumPoll:
        """Lock or unlock voting (moderators only)."""
        if not user.is_moderator:
            raise ForbiddenError("Only moderators can lock voting")

        poll = await self._get_poll(poll_id)
        poll.voting_locked = locked
        await self.db.flush()

        logger.info(f"Poll {poll_id} voting {'locked' if locked else 'unlocked'} by {user.id}")
        return poll


def _voter_key(user: ForumUser | None, guest_key: str | None) -> str | None:
    if user is not None:
        return user.voter_key
    if guest_key:
        return f"guest:{guest_key}"
    return None

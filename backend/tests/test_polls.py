"""
Poll engine: draft validation, voting rules and result visibility.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from app.models.forum import ForumPoll, ForumPollVote, HideResults
from app.modules.forum.exceptions import (
    ConflictError,
    ForbiddenError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.permissions import ForumUser
from app.modules.forum.polls import PollDraft, PollService


async def make_poll(forum, board, author, **options) -> ForumPoll:
    choices = options.pop("choices", ["A", "B", "C"])
    topic = await forum.create_topic(
        board.id,
        author,
        "Poll topic",
        "Please vote",
        poll=PollDraft(question="Which one?", choices=choices, **options),
    )
    result = await forum.db.execute(select(ForumPoll).where(ForumPoll.topic_id == topic.id))
    return result.scalar_one()


def choice_ids(view) -> list[int]:
    return [choice.id for choice in view.choices]


@pytest.mark.parametrize(
    "draft",
    [
        PollDraft(question="", choices=["A", "B"]),
        PollDraft(question="Q", choices=["A"]),
        PollDraft(question="Q", choices=["A", " "]),
        PollDraft(question="Q", choices=["A", "B"], max_votes=0),
        PollDraft(question="Q", choices=["A", "B"], max_votes=3),
        PollDraft(question="Q", choices=["A", "B"], hide_results=5),
        PollDraft(question="Q", choices=["A", "B"], hide_results=HideResults.AFTER_EXPIRY),
        PollDraft(question="Q", choices=["A", "B"], expire_time=datetime.utcnow() - timedelta(hours=1)),
    ],
)
async def test_invalid_drafts(session, draft):
    with pytest.raises(ForumValidationError):
        PollService(session).validate_draft(draft)


async def test_vote_increments_counts(forum, session, board, member, other_member):
    poll = await make_poll(forum, board, member, max_votes=2)
    polls = PollService(session)
    a, b, c = choice_ids(await polls.get_poll(poll.id))

    view = await polls.vote_poll(poll.id, other_member, [a, c])

    votes = {choice.id: choice.votes for choice in view.choices}
    assert votes == {a: 1, b: 0, c: 1}
    assert view.total_votes == 2
    assert view.total_voters == 1
    assert view.user_voted
    assert view.user_choices == sorted([a, c])
    assert not view.can_vote


async def test_second_vote_without_change_is_conflict(forum, session, board, member, other_member):
    poll = await make_poll(forum, board, member, choices=["A", "B"])
    polls = PollService(session)
    a, b = choice_ids(await polls.get_poll(poll.id))

    await polls.vote_poll(poll.id, other_member, [a])
    with pytest.raises(ConflictError):
        await polls.vote_poll(poll.id, other_member, [b])

    view = await polls.get_poll(poll.id, other_member)
    assert [choice.votes for choice in view.choices] == [1, 0]


async def test_change_vote_replaces_previous_set(forum, session, board, member, other_member):
    poll = await make_poll(forum, board, member, choices=["A", "B"], change_vote=True)
    polls = PollService(session)
    a, b = choice_ids(await polls.get_poll(poll.id))

    await polls.vote_poll(poll.id, other_member, [a])
    view = await polls.vote_poll(poll.id, other_member, [b])

    assert [choice.votes for choice in view.choices] == [0, 1]
    assert view.user_choices == [b]
    stored = await session.scalar(
        select(func.count(ForumPollVote.id)).where(ForumPollVote.poll_id == poll.id)
    )
    assert stored == 1


async def test_vote_validation(forum, session, board, member, other_member):
    poll = await make_poll(forum, board, member, max_votes=1)
    other_poll = await make_poll(forum, board, member, choices=["X", "Y"])
    polls = PollService(session)
    a, b, _ = choice_ids(await polls.get_poll(poll.id))
    foreign = choice_ids(await polls.get_poll(other_poll.id))[0]

    with pytest.raises(ForumValidationError):
        await polls.vote_poll(poll.id, other_member, [])
    with pytest.raises(ForumValidationError):
        await polls.vote_poll(poll.id, other_member, [a, b])
    with pytest.raises(ForumValidationError):
        await polls.vote_poll(poll.id, other_member, [foreign])
    with pytest.raises(ForumValidationError):
        await polls.vote_poll(other_poll.id, other_member, [foreign, foreign])
    with pytest.raises(NotFoundError):
        await polls.vote_poll(9999, other_member, [a])


async def test_locked_and_expired_polls_refuse_votes(forum, session, board, member, other_member, moderator):
    poll = await make_poll(forum, board, member)
    polls = PollService(session)
    a = choice_ids(await polls.get_poll(poll.id))[0]

    with pytest.raises(ForbiddenError):
        await polls.set_voting_locked(poll.id, True, other_member)

    await polls.set_voting_locked(poll.id, True, moderator)
    with pytest.raises(ForbiddenError):
        await polls.vote_poll(poll.id, other_member, [a])

    await polls.set_voting_locked(poll.id, False, moderator)
    poll.expire_time = datetime.utcnow() - timedelta(minutes=1)
    await session.flush()
    with pytest.raises(ForbiddenError):
        await polls.vote_poll(poll.id, other_member, [a])

    view = await polls.get_poll(poll.id, other_member)
    assert view.is_expired
    assert not view.can_vote


async def test_guest_votes(forum, session, board, member):
    closed = await make_poll(forum, board, member)
    open_ = await make_poll(forum, board, member, guest_vote=True)
    polls = PollService(session)

    with pytest.raises(ForbiddenError):
        await polls.vote_poll(closed.id, None, choice_ids(await polls.get_poll(closed.id))[:1], guest_key="s1")

    choice = choice_ids(await polls.get_poll(open_.id))[0]
    with pytest.raises(ForbiddenError):
        await polls.vote_poll(open_.id, None, [choice], guest_key=None)

    view = await polls.vote_poll(open_.id, None, [choice], guest_key="s1")
    assert view.user_voted
    with pytest.raises(ConflictError):
        await polls.vote_poll(open_.id, None, [choice], guest_key="s1")

    view = await polls.vote_poll(open_.id, None, [choice], guest_key="s2")
    assert view.total_voters == 2


async def test_results_hidden_until_vote(forum, session, board, member, other_member, moderator):
    poll = await make_poll(forum, board, member, hide_results=HideResults.AFTER_VOTE)
    polls = PollService(session)
    a = choice_ids(await polls.get_poll(poll.id))[0]
    await polls.vote_poll(poll.id, member, [a])

    hidden = await polls.get_poll(poll.id, other_member)
    assert not hidden.results_visible
    assert hidden.total_votes is None
    assert all(choice.votes is None for choice in hidden.choices)

    assert (await polls.get_poll(poll.id, moderator)).results_visible

    visible = await polls.vote_poll(poll.id, other_member, [a])
    assert visible.results_visible
    assert visible.choices[0].votes == 2
    assert visible.choices[0].percentage == 100.0


async def test_results_hidden_until_expiry(forum, session, board, member, other_member):
    poll = await make_poll(
        forum,
        board,
        member,
        hide_results=HideResults.AFTER_EXPIRY,
        expire_time=datetime.utcnow() + timedelta(days=1),
    )
    polls = PollService(session)

    view = await polls.vote_poll(poll.id, other_member, choice_ids(await polls.get_poll(poll.id))[:1])
    assert not view.results_visible

    poll.expire_time = datetime.utcnow() - timedelta(seconds=1)
    await session.flush()
    assert (await polls.get_poll(poll.id, other_member)).results_visible


async def test_percentages_round_to_one_decimal(forum, session, board, member):
    poll = await make_poll(forum, board, member)
    polls = PollService(session)
    a, b, _ = choice_ids(await polls.get_poll(poll.id))

    for voter_id, choice in [(100, a), (101, a), (102, b)]:
        await polls.vote_poll(poll.id, ForumUser(id=voter_id, name=f"v{voter_id}"), [choice])

    view = await polls.get_poll(poll.id)
    assert [choice.percentage for choice in view.choices] == [66.7, 33.3, 0.0]

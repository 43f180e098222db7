"""
Moderation: reports, lock, sticky and move.
"""

import pytest

from app.models.forum import ReportStatus
from app.modules.forum.exceptions import (
    ConflictError,
    ForbiddenError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.moderation import ModerationService
from app.modules.forum.permissions import ForumUser


@pytest.fixture
def moderation(session, permissions) -> ModerationService:
    return ModerationService(session, permissions)


async def test_report_and_close(forum, moderation, board, member, other_member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    report = await moderation.report_message(topic.first_message_id, other_member, "spam content")
    assert report.status == ReportStatus.OPEN
    assert report.message_body == "World"
    assert report.message_author_name == "alice"

    closed = await moderation.close_report(report.id, moderator)
    assert closed.status == ReportStatus.CLOSED
    assert closed.closed_by == moderator.id
    assert closed.closed_at is not None


async def test_closing_twice_is_conflict(forum, moderation, board, member, other_member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    report = await moderation.report_message(topic.first_message_id, other_member, "spam content")
    await moderation.close_report(report.id, moderator)

    other_moderator = ForumUser(id=2, name="mod2", is_moderator=True)
    with pytest.raises(ConflictError):
        await moderation.close_report(report.id, other_moderator)

    assert (await moderation.get_report(report.id, moderator)).closed_by == moderator.id
    with pytest.raises(NotFoundError):
        await moderation.close_report(999, moderator)


async def test_report_comment_length(forum, moderation, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    with pytest.raises(ForumValidationError):
        await moderation.report_message(topic.first_message_id, other_member, "short")
    with pytest.raises(ForumValidationError):
        await moderation.report_message(topic.first_message_id, other_member, "x" * 1001)
    with pytest.raises(NotFoundError):
        await moderation.report_message(999, other_member, "spam content")


async def test_duplicate_open_report(forum, moderation, board, member, other_member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    report = await moderation.report_message(topic.first_message_id, other_member, "spam content")

    with pytest.raises(ConflictError):
        await moderation.report_message(topic.first_message_id, other_member, "spam again!!")

    # Another member, or the same member after closure, may report again
    await moderation.report_message(topic.first_message_id, member, "my own post is spam")
    await moderation.close_report(report.id, moderator)
    await moderation.report_message(topic.first_message_id, other_member, "still spam here")


async def test_reports_require_moderator(moderation, member):
    with pytest.raises(ForbiddenError):
        await moderation.get_reports(member)
    with pytest.raises(ForbiddenError):
        await moderation.get_reports_count(member)
    with pytest.raises(ForbiddenError):
        await moderation.close_report(1, member)


async def test_report_listing_and_counts(forum, moderation, board, member, other_member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    first = await moderation.report_message(topic.first_message_id, other_member, "first report")
    second = await moderation.report_message(topic.first_message_id, member, "second report")
    await moderation.close_report(first.id, moderator)

    reports, total = await moderation.get_reports(moderator)
    assert total == 2
    assert [report.id for report in reports] == [second.id, first.id]

    open_reports, total = await moderation.get_reports(moderator, status=ReportStatus.OPEN)
    assert total == 1
    assert open_reports[0].id == second.id

    assert await moderation.get_reports_count(moderator) == {"open": 1, "closed": 1, "total": 2}


async def test_lock_topic(forum, moderation, board, member, other_member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    with pytest.raises(ForbiddenError):
        await moderation.lock_topic(topic.id, True, member)

    await moderation.lock_topic(topic.id, True, moderator)
    with pytest.raises(ForbiddenError):
        await forum.create_post(topic.id, other_member, None, "Reply")
    await forum.create_post(topic.id, moderator, None, "Locked for now")

    await moderation.lock_topic(topic.id, False, moderator)
    await forum.create_post(topic.id, other_member, None, "Reply")
    assert (await forum.get_topic(topic.id)).reply_count == 2


async def test_sticky_topic(forum, moderation, board, member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    with pytest.raises(ForbiddenError):
        await moderation.set_sticky(topic.id, True, member)

    assert (await moderation.set_sticky(topic.id, True, moderator)).is_sticky


async def test_move_topic(forum, moderation, board, second_board, member, other_member, moderator):
    staying = await forum.create_topic(board.id, member, "Staying", "Body")
    moving = await forum.create_topic(board.id, member, "Moving", "Body")
    reply = await forum.create_post(moving.id, other_member, None, "Reply")

    with pytest.raises(ForbiddenError):
        await moderation.move_topic(moving.id, second_board.id, member)

    moved = await moderation.move_topic(moving.id, second_board.id, moderator)
    assert moved.board_id == second_board.id

    source = await forum.get_board(board.id)
    target = await forum.get_board(second_board.id)
    assert (source.topic_count, source.message_count) == (1, 1)
    assert (target.topic_count, target.message_count) == (1, 2)
    assert source.last_message_id == staying.first_message_id
    assert target.last_message_id == reply.id

    page = await forum.get_topic_with_posts(moving.id)
    assert {message.board_id for message in page.posts.items} == {second_board.id}


async def test_move_topic_errors(forum, moderation, board, member, moderator):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    with pytest.raises(ForumValidationError):
        await moderation.move_topic(topic.id, board.id, moderator)
    with pytest.raises(NotFoundError):
        await moderation.move_topic(topic.id, 999, moderator)
    with pytest.raises(NotFoundError):
        await moderation.move_topic(999, board.id, moderator)

"""
Read-state tracker: topic and global markers.
"""

import pytest

from app.modules.forum.exceptions import NotFoundError
from app.modules.forum.read_state import ReadStateService


@pytest.fixture
def read_state(session) -> ReadStateService:
    return ReadStateService(session)


async def test_new_topics_are_unread(forum, read_state, board, member, other_member):
    first = await forum.create_topic(board.id, member, "First", "Body")
    second = await forum.create_topic(board.id, member, "Second", "Body")

    topics = await read_state.get_unread_topics(other_member.id)

    assert [topic.id for topic in topics] == [second.id, first.id]
    assert await read_state.get_unread_count(other_member.id) == 2


async def test_mark_topic_read_then_new_reply(forum, read_state, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")

    await read_state.mark_topic_as_read(topic.id, other_member.id)
    assert topic.id not in {t.id for t in await read_state.get_unread_topics(other_member.id)}

    await forum.create_post(topic.id, member, None, "News")
    assert topic.id in {t.id for t in await read_state.get_unread_topics(other_member.id)}


async def test_marker_is_topic_last_message_time(forum, read_state, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    topic = await forum.get_topic(topic.id)

    marked_at = await read_state.mark_topic_as_read(topic.id, other_member.id)

    assert marked_at == topic.last_message_time


async def test_mark_all_read_clears_count(forum, read_state, board, second_board, member, other_member):
    await forum.create_topic(board.id, member, "One", "Body")
    await forum.create_topic(second_board.id, member, "Two", "Body")

    await read_state.mark_all_as_read(other_member.id)

    assert await read_state.get_unread_count(other_member.id) == 0
    assert await read_state.get_unread_topics(other_member.id) == []


async def test_newer_topic_marker_wins_over_global(forum, read_state, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    await read_state.mark_all_as_read(other_member.id)

    await forum.create_post(topic.id, member, None, "After the global marker")
    assert await read_state.get_unread_count(other_member.id) == 1

    await read_state.mark_topic_as_read(topic.id, other_member.id)
    assert await read_state.get_unread_count(other_member.id) == 0


async def test_global_marker_newer_than_topic_marker(forum, read_state, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    await read_state.mark_topic_as_read(topic.id, other_member.id)
    await forum.create_post(topic.id, member, None, "Reply")

    await read_state.mark_all_as_read(other_member.id)

    assert await read_state.get_unread_count(other_member.id) == 0


async def test_unread_scoped_to_board(forum, read_state, board, second_board, member, other_member):
    await forum.create_topic(board.id, member, "One", "Body")
    other = await forum.create_topic(second_board.id, member, "Two", "Body")

    topics = await read_state.get_unread_topics(other_member.id, board_id=second_board.id)

    assert [topic.id for topic in topics] == [other.id]
    assert await read_state.get_unread_count(other_member.id, board_id=second_board.id) == 1


async def test_unread_topic_ids(forum, read_state, board, member, other_member):
    read = await forum.create_topic(board.id, member, "Read", "Body")
    unread = await forum.create_topic(board.id, member, "Unread", "Body")
    await read_state.mark_topic_as_read(read.id, other_member.id)

    assert await read_state.unread_topic_ids(other_member.id, [read.id, unread.id]) == {unread.id}
    assert await read_state.unread_topic_ids(other_member.id, []) == set()


async def test_mark_missing_topic(read_state, member):
    with pytest.raises(NotFoundError):
        await read_state.mark_topic_as_read(404, member.id)

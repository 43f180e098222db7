"""
Reconciliation job: full recompute of counters and pointers.
"""

from sqlalchemy import update

from app.models.forum import ForumBoard, ForumMessage, ForumPollChoice, ForumTopic
from app.modules.forum.maintenance import ReconciliationService, run_reconciliation
from app.modules.forum.polls import PollDraft, PollService


async def test_consistent_data_needs_no_changes(forum, session, board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    await forum.create_post(topic.id, other_member, None, "Reply")

    report = await ReconciliationService(session).fix_message_pointers()

    assert report.total_changes == 0


async def test_repairs_drifted_counters(forum, session, board, second_board, member, other_member):
    topic = await forum.create_topic(board.id, member, "Hello", "World")
    last = await forum.create_post(topic.id, other_member, None, "Reply")

    await session.execute(
        update(ForumTopic)
        .where(ForumTopic.id == topic.id)
        .values(reply_count=17, last_message_id=None, first_message_id=None)
    )
    await session.execute(
        update(ForumBoard)
        .where(ForumBoard.id == board.id)
        .values(topic_count=0, message_count=99, last_message_id=None)
    )
    await session.execute(
        update(ForumMessage).where(ForumMessage.id == last.id).values(board_id=second_board.id)
    )

    report = await ReconciliationService(session).fix_message_pointers()

    assert report.messages_realigned == 1
    assert report.topics_updated == 1
    assert report.boards_updated == 1

    topic = await forum.get_topic(topic.id)
    assert topic.reply_count == 1
    assert topic.last_message_id == last.id
    assert topic.last_poster_name == "bob"
    assert topic.first_message_id < last.id

    fixed = await forum.get_board(board.id)
    assert (fixed.topic_count, fixed.message_count, fixed.last_message_id) == (1, 2, last.id)

    # Second run finds nothing left to do
    assert (await ReconciliationService(session).fix_message_pointers()).total_changes == 0


async def test_reply_count_matches_messages(forum, session, board, member):
    for n in range(3):
        topic = await forum.create_topic(board.id, member, f"Topic {n}", "Body")
        for _ in range(n):
            await forum.create_post(topic.id, member, None, "Reply")
    await session.execute(update(ForumTopic).values(reply_count=0))

    await ReconciliationService(session).fix_message_pointers()

    _, page = await forum.get_board_with_topics(board.id)
    assert sorted(topic.reply_count for topic in page.items) == [0, 1, 2]


async def test_empty_board_pointer_is_cleared(forum, session, board, member):
    await session.execute(
        update(ForumBoard)
        .where(ForumBoard.id == board.id)
        .values(topic_count=3, last_message_id=12345, last_poster_name="ghost")
    )

    report = await ReconciliationService(session).fix_message_pointers()

    board = await forum.get_board(board.id)
    assert report.boards_updated == 1
    assert board.topic_count == 0
    assert board.last_message_id is None
    assert board.last_poster_name is None


async def test_repairs_poll_choice_counts(forum, session, board, member, other_member):
    topic = await forum.create_topic(
        board.id, member, "Poll", "Body", poll=PollDraft(question="Q", choices=["A", "B"])
    )
    polls = PollService(session)
    poll_id = await polls.get_poll_id_for_topic(topic.id)
    a, _ = [choice.id for choice in (await polls.get_poll(poll_id)).choices]
    await polls.vote_poll(poll_id, other_member, [a])

    await session.execute(update(ForumPollChoice).values(vote_count=5))

    report = await ReconciliationService(session).fix_message_pointers()

    assert report.choices_updated == 2
    view = await polls.get_poll(poll_id)
    assert [choice.votes for choice in view.choices] == [1, 0]


async def test_run_reconciliation_commits(database, session, forum, board, member):
    await forum.create_topic(board.id, member, "Hello", "World")
    await session.execute(update(ForumBoard).values(message_count=0))
    await session.commit()

    report = await run_reconciliation(database)

    assert report is not None
    assert report.boards_updated == 1
    assert report.to_dict()["total_changes"] == 1

"""
Presence tracker: recording, deduplication, sweeping and the middleware.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from app.main import app
from app.models.forum import ForumOnline
from app.modules.forum.presence import PresenceTracker, action_from_path, format_action


@pytest.fixture
async def tracker(database):
    tracker = PresenceTracker(database, window_minutes=15, sweep_interval=3600)
    await tracker.start()
    yield tracker
    await tracker.stop()


async def add_stale_entry(database, session_id: str = "stale") -> None:
    async with database.session_factory() as session:
        session.add(
            ForumOnline(
                session=session_id,
                member_id=0,
                action="{}",
                log_time=datetime.utcnow() - timedelta(minutes=20),
            )
        )
        await session.commit()


def test_format_action():
    assert format_action({"action": "home"}) == "On the site"
    assert format_action({"action": "forum_topic", "topic": 5}) == "Reading topic #5"
    assert format_action({"action": "forum_topic", "topicTitle": "Rules"}) == "Reading the topic Rules"
    assert format_action({"action": "forum_board"}) == "Viewing a board"
    assert format_action({"action": "who_online"}) == "Viewing who is online"
    assert format_action({"action": "something else"}) == "On the site"


def test_action_from_path():
    assert action_from_path("/") == {"action": "home"}
    assert action_from_path("/api/v1/forums/topics/12") == {"action": "forum_topic", "topic": 12}
    assert action_from_path("/api/v1/forums/boards/3") == {"action": "forum_board", "board": 3}
    assert action_from_path("/api/v1/forums/online") == {"action": "who_online"}
    assert action_from_path("/api/v1/forums/categories") == {"action": "forum_index"}
    assert action_from_path("/elsewhere") == {"action": "browsing", "path": "/elsewhere"}


async def test_online_users_are_deduplicated(tracker):
    await tracker.record("s1", 42, "alice", "10.0.0.1", {"action": "forum_topic", "topic": 5})
    await tracker.record("s2", 42, "alice", "10.0.0.3", {"action": "home"})
    await tracker.record("g1", None, None, "10.0.0.2", {"action": "forum_index"})

    result = await tracker.get_online_users()

    assert result["stats"] == {"total_online": 2, "members": 1, "guests": 1}
    assert [user["session"] for user in result["users"]] == ["g1", "s2"]
    assert result["users"][0]["name"] == "Guest"
    assert result["users"][0]["action"] == "Viewing the forum index"
    assert result["users"][1]["action"] == "On the site"

    members = await tracker.get_online_users(filter="members")
    assert [user["id"] for user in members["users"]] == [42]


async def test_record_upserts_by_session(tracker):
    await tracker.record("s1", None, None, "10.0.0.1", {"action": "login"})
    await tracker.record("s1", 7, "bob", "10.0.0.1", {"action": "home"})

    stats = await tracker.get_online_stats()

    assert stats["member_count"] == 1
    assert stats["guest_count"] == 0
    assert stats["members"] == [{"id": 7, "name": "bob"}]


async def test_sweep_removes_stale_entries(database, tracker):
    await add_stale_entry(database)
    await tracker.record("fresh", None, None, "10.0.0.1", {"action": "home"})

    assert await tracker.sweep() == 1

    stats = await tracker.get_online_stats()
    assert stats["total_online"] == 1
    assert await tracker.sweep() == 0


async def test_background_sweep(database):
    tracker = PresenceTracker(database, sweep_interval=0.01)
    await add_stale_entry(database)

    await tracker.start()
    await asyncio.sleep(0.2)
    await tracker.stop()

    assert await tracker.sweep() == 0


async def test_track_does_not_block(tracker):
    tracker.track("s9", 3, "carol", "10.0.0.9", {"action": "search"})
    await tracker.stop()

    result = await tracker.get_online_users()
    assert result["users"][0]["action"] == "Searching"


async def test_middleware_records_requests(client, tracker):
    app.state.presence = tracker
    try:
        response = await client.get("/api/v1/forums/boards/3")
        stats_response = await client.get("/api/v1/forums/stats")
    finally:
        app.state.presence = None

    assert response.status_code == 404
    assert "session_id=" in response.headers["set-cookie"]
    assert "set-cookie" not in stats_response.headers

    await tracker.stop()
    result = await tracker.get_online_users()
    assert len(result["users"]) == 1
    assert result["users"][0]["action_raw"] == {"action": "forum_board", "board": 3}

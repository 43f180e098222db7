"""
Shared fixtures: a throwaway SQLite database, forum users and an API client.
"""

from typing import Any, AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import Database, get_database
from app.main import app
from app.models.forum import ForumBoard
from app.modules.forum.notifications import ModerationNotifier, get_moderation_notifier
from app.modules.forum.permissions import (
    ForumUser,
    PermissionService,
    get_permission_service,
)
from app.modules.forum.service import ForumService

MODERATOR_ID = 1
ADMIN_ID = 99


class RecordingNotifier(ModerationNotifier):
    """Keeps messages instead of posting them to Telegram."""

    def __init__(self) -> None:
        super().__init__(bot_token="", chat_id="")
        self.sent: list[str] = []

    async def send_message(self, text: str) -> dict[str, Any] | None:
        self.sent.append(text)
        return {"ok": True}


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'forum.db'}")
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest.fixture
async def session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def permissions() -> PermissionService:
    return PermissionService(moderator_ids={MODERATOR_ID}, admin_ids={ADMIN_ID})


@pytest.fixture
def member() -> ForumUser:
    return ForumUser(id=42, name="alice")


@pytest.fixture
def other_member() -> ForumUser:
    return ForumUser(id=7, name="bob")


@pytest.fixture
def moderator() -> ForumUser:
    return ForumUser(id=MODERATOR_ID, name="mod", is_moderator=True)


@pytest.fixture
def forum(session: AsyncSession, permissions: PermissionService) -> ForumService:
    return ForumService(session, permissions)


@pytest.fixture
async def board(forum: ForumService) -> ForumBoard:
    category = await forum.create_category("General")
    return await forum.create_board(category.id, "Announcements", "News and updates")


@pytest.fixture
async def second_board(forum: ForumService, board: ForumBoard) -> ForumBoard:
    return await forum.create_board(board.category_id, "Off-topic")


# ==================== API ====================


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(
    database: Database,
    permissions: PermissionService,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_permission_service] = lambda: permissions
    app.dependency_overrides[get_moderation_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()

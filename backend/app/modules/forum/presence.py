"""
Presence Tracker - Who is online.

Keeps one row per browser session with the time and a JSON description of
the last action. Rows older than the presence window are swept by a
background task started with the application.
"""

import asyncio
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import jwt
from fastapi import Request, Response
from loguru import logger
from pydantic import ValidationError
from sqlalchemy import delete, select

from app.core.config import settings
from app.core.database import Database, upsert
from app.core.security import decode_access_token
from app.models.forum import ForumOnline

SESSION_COOKIE = "session_id"
SESSION_COOKIE_MAX_AGE = 24 * 60 * 60

# Data-fetching endpoints that must not overwrite the visitor's current action
SKIP_PATTERNS = ("/stats", "/count", "/messages/latest", "/health", "/docs", "/openapi")


def format_action(action: dict[str, Any]) -> str:
    """Human-readable label for an action payload."""
    name = action.get("action")

    if name in ("home", "homepage"):
        return "On the site"
    if name in ("forum_index", "forums"):
        return "Viewing the forum index"
    if name == "forum_board":
        if action.get("boardName"):
            return f"Viewing the board {action['boardName']}"
        return f"Viewing board #{action['board']}" if action.get("board") else "Viewing a board"
    if name == "forum_topic":
        if action.get("topicTitle"):
            return f"Reading the topic {action['topicTitle']}"
        return f"Reading topic #{action['topic']}" if action.get("topic") else "Reading a topic"
    if name in ("who_online", "online", "forums_online"):
        return "Viewing who is online"
    if name == "profile":
        if action.get("userId"):
            return f"Viewing the profile of member #{action['userId']}"
        return "Viewing a profile"
    if name == "unread":
        return "Viewing unread topics"
    if name == "moderation":
        return "Moderating"
    if name == "search":
        return "Searching"
    if name == "login":
        return "Logging in"
    if name == "logout":
        return "Logging out"
    return "On the site"


def _extract_id(path: str, marker: str) -> int | None:
    if marker not in path:
        return None
    part = path.split(marker, 1)[1].split("/")[0]
    return int(part) if part.isdigit() else None


def action_from_path(path: str) -> dict[str, Any]:
    """Derive the action payload of a request from its path."""
    if path in ("/", "/home"):
        return {"action": "home"}

    if "/forums" in path:
        if "/topics/" in path:
            return {"action": "forum_topic", "topic": _extract_id(path, "/topics/")}
        if "/boards/" in path:
            return {"action": "forum_board", "board": _extract_id(path, "/boards/")}
        if "/online" in path:
            return {"action": "who_online"}
        if "/users/" in path:
            return {"action": "profile", "userId": _extract_id(path, "/users/")}
        if "/unread" in path:
            return {"action": "unread"}
        if "/reports" in path:
            return {"action": "moderation"}
        return {"action": "forum_index"}

    return {"action": "browsing", "path": path}


class PresenceTracker:
    """
    Registry of recently active sessions.

    Usage:
        presence = PresenceTracker(database)
        await presence.start()
        presence.track(session_id, member_id, member_name, ip, {"action": "home"})
        ...
        await presence.stop()
    """

    def __init__(
        self,
        db: Database,
        window_minutes: int | None = None,
        sweep_interval: float | None = None,
    ) -> None:
        """
        Initialize presence tracker.

        Args:
            db: Database handle; each write uses its own session
            window_minutes: How long a session counts as online
            sweep_interval: Seconds between sweeps of stale rows
        """
        self.db = db
        self.window = timedelta(
            minutes=window_minutes or settings.presence_window_minutes
        )
        self.sweep_interval = sweep_interval or settings.presence_sweep_interval_seconds

        self._running = False
        self._sweep_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start periodic sweeping."""
        if self._running:
            return
        if self.db.session_factory is None:
            await self.db.connect()

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Presence tracker started (window {self.window}, "
            f"sweep every {self.sweep_interval}s)"
        )

    async def stop(self) -> None:
        """Stop sweeping and wait for in-flight writes."""
        self._running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        logger.info("Presence tracker stopped")

    async def _sweep_loop(self) -> None:
        """Remove stale sessions until stopped."""
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Presence sweep error: {e}")

    # ==================== Recording ====================

    def track(
        self,
        session_id: str,
        member_id: int | None,
        member_name: str | None,
        ip: str | None,
        action: dict[str, Any],
    ) -> None:
        """Record activity without waiting for the write."""
        task = asyncio.create_task(
            self._record_logged(session_id, member_id, member_name, ip, action)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_logged(self, *args: Any) -> None:
        try:
            await self.record(*args)
        except Exception as e:
            logger.error(f"Activity tracking error: {e}")

    async def record(
        self,
        session_id: str,
        member_id: int | None,
        member_name: str | None,
        ip: str | None,
        action: dict[str, Any],
    ) -> None:
        """Upsert the session's last activity."""
        values = {
            "session": session_id[:128],
            "member_id": member_id or 0,
            "member_name": member_name,
            "ip": ip,
            "action": json.dumps(action),
            "log_time": datetime.utcnow(),
        }
        async with self.db.session_factory() as session:
            async with session.begin():
                await session.execute(
                    upsert(
                        session,
                        ForumOnline,
                        values,
                        index_elements=["session"],
                        update_fields=["member_id", "member_name", "ip", "action", "log_time"],
                    )
                )

    async def sweep(self) -> int:
        """
        Delete sessions older than the window.

        Returns:
            Number of rows removed
        """
        cutoff = datetime.utcnow() - self.window
        async with self.db.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ForumOnline).where(ForumOnline.log_time < cutoff)
                )

        removed = result.rowcount or 0
        if removed:
            logger.info(f"Cleaned up {removed} old activity entries")
        return removed

    # ==================== Queries ====================

    async def _recent_entries(self, filter: str = "all") -> list[ForumOnline]:
        cutoff = datetime.utcnow() - self.window
        query = select(ForumOnline).where(ForumOnline.log_time >= cutoff)
        if filter == "members":
            query = query.where(ForumOnline.member_id != 0)
        elif filter == "guests":
            query = query.where(ForumOnline.member_id == 0)
        query = query.order_by(ForumOnline.log_time.desc(), ForumOnline.session)

        async with self.db.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_online_users(
        self,
        filter: str = "all",
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """
        Get online members and guests, most recent first.

        A member with several sessions is listed once, with the latest one.

        Args:
            filter: "all", "members" or "guests"
            limit: Max users returned
            offset: Skip users

        Returns:
            Users, totals and pagination info
        """
        users: list[dict[str, Any]] = []
        seen_members: set[int] = set()

        for entry in await self._recent_entries(filter):
            if entry.member_id:
                if entry.member_id in seen_members:
                    continue
                seen_members.add(entry.member_id)

            try:
                action = json.loads(entry.action)
            except ValueError:
                action = {"action": "unknown"}

            is_guest = entry.member_id == 0
            users.append(
                {
                    "session": entry.session,
                    "is_guest": is_guest,
                    "id": None if is_guest else entry.member_id,
                    "name": "Guest" if is_guest else entry.member_name,
                    "time": entry.log_time,
                    "action": format_action(action),
                    "action_raw": action,
                }
            )

        members = sum(1 for user in users if not user["is_guest"])
        return {
            "users": users[offset : offset + limit],
            "stats": {
                "total_online": len(users),
                "members": members,
                "guests": len(users) - members,
            },
            "pagination": {
                "limit": limit,
                "offset": offset,
                "total_pages": -(-len(users) // limit) if limit else 0,
            },
        }

    async def get_online_stats(self) -> dict[str, Any]:
        """Online totals for the index page."""
        members: dict[int, str | None] = {}
        guests = 0
        for entry in await self._recent_entries():
            if entry.member_id:
                members.setdefault(entry.member_id, entry.member_name)
            else:
                guests += 1

        return {
            "total_online": len(members) + guests,
            "member_count": len(members),
            "guest_count": guests,
            "members": [{"id": id_, "name": name} for id_, name in members.items()],
        }


# ==================== Middleware ====================


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _request_action(request: Request) -> dict[str, Any]:
    """Action from the X-Activity header when the client sends one."""
    header = request.headers.get("x-activity")
    if header:
        try:
            action = json.loads(header)
        except ValueError:
            action = None
        if isinstance(action, dict) and isinstance(action.get("action"), str):
            return action
    return action_from_path(request.url.path)


def _request_member(request: Request) -> tuple[int | None, str | None]:
    authorization = request.headers.get("authorization", "")
    if not authorization.lower().startswith("bearer "):
        return None, None
    try:
        payload = decode_access_token(authorization[7:])
    except (jwt.InvalidTokenError, ValidationError):
        return None, None
    return payload.sub, payload.name or None


async def track_activity(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """
    HTTP middleware recording the visitor's current action.

    Does nothing unless a PresenceTracker is set on app.state.presence.
    """
    tracker: PresenceTracker | None = getattr(request.app.state, "presence", None)
    path = request.url.path
    if tracker is None or any(pattern in path for pattern in SKIP_PATTERNS):
        return await call_next(request)

    session_id = request.cookies.get(SESSION_COOKIE)
    new_session = not session_id
    if new_session:
        session_id = f"session_{secrets.token_urlsafe(24)}"

    member_id, member_name = _request_member(request)
    tracker.track(session_id, member_id, member_name, _client_ip(request), _request_action(request))

    response = await call_next(request)
    if new_session:
        response.set_cookie(
            SESSION_COOKIE,
            session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=not settings.debug,
        )
    return response

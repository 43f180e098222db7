"""
Capability checks for the forum.

Role resolution belongs to the permission service of the site; the forum
only asks yes/no questions through PermissionService.
"""

from dataclasses import dataclass

from app.core.config import settings
from app.models.forum import ForumBoard


@dataclass(frozen=True)
class ForumUser:
    """Authenticated identity as seen by the forum."""

    id: int
    name: str
    is_moderator: bool = False
    is_admin: bool = False

    @property
    def voter_key(self) -> str:
        return f"member:{self.id}"


class PermissionService:
    """
    Default capability checks backed by configured id lists.

    Replace through the `get_permission_service` dependency to plug in the
    site's group-based permission resolution.
    """

    def __init__(
        self,
        moderator_ids: set[int] | None = None,
        admin_ids: set[int] | None = None,
    ) -> None:
        self.moderator_ids = (
            set(settings.forum_moderator_ids) if moderator_ids is None else moderator_ids
        )
        self.admin_ids = set(settings.forum_admin_ids) if admin_ids is None else admin_ids

    async def is_admin(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.admin_ids

    async def can_moderate(self, user_id: int | None) -> bool:
        """Admins are moderators everywhere."""
        if user_id is None:
            return False
        return user_id in self.moderator_ids or await self.is_admin(user_id)

    async def can_post_in_board(self, user: ForumUser, board: ForumBoard) -> bool:
        """Locked boards accept posts from moderators only."""
        if not board.is_locked:
            return True
        return user.is_moderator


# Singleton instance
_permission_service: PermissionService | None = None


def get_permission_service() -> PermissionService:
    """Get or create permission service singleton."""
    global _permission_service
    if _permission_service is None:
        _permission_service = PermissionService()
    return _permission_service

"""
Forum Module - Community discussions.

Features:
- Boards, topics and messages with denormalized counters
- Polls attached to topics
- Unread tracking
- Moderation tools and staff notifications
- Counter reconciliation
- Who is online
"""

from app.modules.forum.exceptions import (
    ConflictError,
    ForbiddenError,
    ForumError,
    ForumValidationError,
    NotFoundError,
)
from app.modules.forum.maintenance import ReconciliationService
from app.modules.forum.moderation import ModerationService
from app.modules.forum.polls import PollService
from app.modules.forum.presence import PresenceTracker
from app.modules.forum.read_state import ReadStateService
from app.modules.forum.service import ForumService

__all__ = [
    "ForumService",
    "PollService",
    "ReadStateService",
    "ModerationService",
    "ReconciliationService",
    "PresenceTracker",
    "ForumError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "ForumValidationError",
]

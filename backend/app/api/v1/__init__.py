"""
API Version 1 Router.

Combines all forum endpoints under /api/v1/forums.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import admin, forum, moderation, polls, presence

router = APIRouter()

# Include endpoint routers
router.include_router(forum.router, prefix="/forums", tags=["Forum"])
router.include_router(polls.router, prefix="/forums", tags=["Polls"])
router.include_router(moderation.router, prefix="/forums", tags=["Moderation"])
router.include_router(presence.router, prefix="/forums", tags=["Presence"])
router.include_router(admin.router, prefix="/forums", tags=["Administration"])

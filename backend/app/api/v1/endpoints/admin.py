"""
Forum Administration Endpoints.

Board configuration and the reconciliation job. Administrators only.
"""

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_admin
from app.api.v1.serializers import board_to_dict
from app.core.database import get_db
from app.modules.forum.maintenance import ReconciliationService
from app.modules.forum.permissions import ForumUser
from app.modules.forum.service import ForumService

router = APIRouter()


# ==================== Schemas ====================


class CreateCategoryRequest(BaseModel):
    name: str
    sort_order: int = 0


class CreateBoardRequest(BaseModel):
    category_id: int
    name: str
    description: str | None = None
    is_locked: bool = False
    sort_order: int = 0


# ==================== Configuration ====================


@router.post("/admin/categories", status_code=status.HTTP_201_CREATED)
async def create_category(
    request: CreateCategoryRequest,
    admin: ForumUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Create forum category."""
    category = await ForumService(db).create_category(request.name, request.sort_order)
    return {"id": category.id, "name": category.name, "sort_order": category.sort_order}


@router.post("/admin/boards", status_code=status.HTTP_201_CREATED)
async def create_board(
    request: CreateBoardRequest,
    admin: ForumUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, Any]:
    """Create board in a category."""
    board = await ForumService(db).create_board(
        category_id=request.category_id,
        name=request.name,
        description=request.description,
        is_locked=request.is_locked,
        sort_order=request.sort_order,
    )
    return board_to_dict(board)


# ==================== Maintenance ====================


@router.post("/maintenance/fix-pointers")
async def fix_pointers(
    admin: ForumUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db, scope="function"),
) -> dict[str, int]:
    """Recompute all counters and last-message pointers."""
    report = await ReconciliationService(db).fix_message_pointers()
    return report.to_dict()

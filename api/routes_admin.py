"""
api/routes_admin.py — Administrative API Endpoints

Endpoints:
    GET /admin/umids?is_active=&limit=&offset=   → List all UMIDs (admin roles)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_caller
from config import settings
from core.schemas import Caller, UMIDFilters, UMIDView
from db.session import get_db
from modules.queries import get_all_umids

router = APIRouter()


@router.get("/umids", response_model=List[UMIDView])
async def list_all_umids(
    is_active: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=settings.ADMIN_LIST_MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    filters = UMIDFilters(is_active=is_active, limit=limit, offset=offset)
    return await get_all_umids(db, caller, filters)

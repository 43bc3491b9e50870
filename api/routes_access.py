"""
api/routes_access.py — Clinical Access API Endpoints
======================================================
The only way a doctor / nurse / lab reads UMID data. Every call is
code-gated and audited, and always answers 200 with an AccessResult:
a bad code is an outcome, not an error.

Endpoints:
    POST /access/request   → Present a UMID (id or number) + code
    POST /access/qr        → Present a scanned QR token + code
    GET  /access/history   → The caller's own scan history, newest first
"""

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import client_ip, get_caller
from config import settings
from core.schemas import AccessLogView, AccessResult, Caller
from db.session import get_db
from modules.access import redeem_qr_token, request_access
from modules.queries import get_scan_history

router = APIRouter()


class AccessRequest(BaseModel):
    umid: str = Field(max_length=64)       # record id or UMID-XXXXXXXXXXXX
    code: str = Field(max_length=16)
    access_type: Literal["scan", "manual_entry"] = "manual_entry"
    purpose: Optional[str] = Field(default=None, max_length=255)
    device_id: Optional[str] = Field(default=None, max_length=255)


class QRAccessRequest(BaseModel):
    qr_token: str = Field(max_length=2048)
    code: str = Field(max_length=16)
    purpose: Optional[str] = Field(default=None, max_length=255)
    device_id: Optional[str] = Field(default=None, max_length=255)


@router.post("/request", response_model=AccessResult)
async def request_umid_access(
    body: AccessRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await request_access(
        db,
        body.umid,
        body.code,
        accessor_role=caller.role,
        accessor_id=caller.id,
        access_type=body.access_type,
        purpose=body.purpose,
        device_id=body.device_id,
        ip_address=client_ip(request),
    )


@router.post("/qr", response_model=AccessResult)
async def redeem_umid_qr(
    body: QRAccessRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await redeem_qr_token(
        db,
        body.qr_token,
        body.code,
        accessor_role=caller.role,
        accessor_id=caller.id,
        purpose=body.purpose,
        device_id=body.device_id,
        ip_address=client_ip(request),
    )


@router.get("/history", response_model=List[AccessLogView])
async def scan_history(
    limit: int = Query(default=settings.SCAN_HISTORY_DEFAULT_LIMIT, ge=1, le=settings.ACCESS_LOG_MAX_LIMIT),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await get_scan_history(db, caller, limit)

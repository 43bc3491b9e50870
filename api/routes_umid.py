"""
api/routes_umid.py — UMID Lifecycle API Endpoints
===================================================
Patient-facing (and admin) management of UMIDs.

Endpoints:
    POST  /umid/issue                    → Issue a UMID for the calling patient
    GET   /umid/patient/{patient_id}     → List a patient's UMIDs (self only)
    GET   /umid/{umid_id}                → One UMID (owner or admin)
    PATCH /umid/{umid_id}/linked-data    → Update the linked medical snapshot
    PATCH /umid/{umid_id}/security       → Update security settings
    POST  /umid/{umid_id}/alerts         → Add a medical alert
    POST  /umid/{umid_id}/deactivate     → Deactivate (idempotent)
    GET   /umid/{umid_id}/code           → Current code + rotating QR token
    GET   /umid/{umid_id}/logs           → Access history, most recent first
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_caller
from config import settings
from core.policy import require_owner_or_admin, require_self
from core.schemas import (
    AccessLogView,
    Caller,
    DisplayCode,
    IssuedUMID,
    LinkedMedicalData,
    LinkedMedicalDataUpdate,
    MedicalAlert,
    SecuritySettingsUpdate,
    UMIDView,
)
from db.session import get_db
from modules import lifecycle
from modules.queries import get_patient_umids

router = APIRouter()


# ── Request schemas ───────────────────────────────────────────────────────────
class IssueRequest(BaseModel):
    linked_medical_data: LinkedMedicalData = Field(default_factory=LinkedMedicalData)
    security_settings: Optional[SecuritySettingsUpdate] = None


# ── Endpoints ─────────────────────────────────────────────────────────────────
@router.post("/issue", response_model=IssuedUMID, status_code=201)
async def issue_umid(
    body: IssueRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a UMID for the calling patient.
    The response is the only time the TOTP secret is ever shown.
    """
    return await lifecycle.issue(
        db,
        patient_id=caller.id,
        linked_medical_data=body.linked_medical_data,
        security_overrides=body.security_settings,
        issued_by=caller.id,
    )


@router.get("/patient/{patient_id}", response_model=List[UMIDView])
async def list_patient_umids(
    patient_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await get_patient_umids(db, caller, patient_id)


@router.get("/{umid_id}", response_model=UMIDView)
async def get_umid(
    umid_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await _owned(db, umid_id, caller)


@router.patch("/{umid_id}/linked-data", response_model=UMIDView)
async def update_linked_data(
    umid_id: str,
    body: LinkedMedicalDataUpdate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, umid_id, caller)
    return await lifecycle.update_linked_data(db, umid_id, body, changed_by=caller.id)


@router.patch("/{umid_id}/security", response_model=UMIDView)
async def update_security_settings(
    umid_id: str,
    body: SecuritySettingsUpdate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, umid_id, caller)
    return await lifecycle.update_security_settings(db, umid_id, body, changed_by=caller.id)


@router.post("/{umid_id}/alerts", response_model=UMIDView, status_code=201)
async def add_medical_alert(
    umid_id: str,
    body: MedicalAlert,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, umid_id, caller)
    return await lifecycle.add_medical_alert(db, umid_id, body, changed_by=caller.id)


@router.post("/{umid_id}/deactivate")
async def deactivate_umid(
    umid_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, umid_id, caller)
    await lifecycle.deactivate(db, umid_id)
    return {"umid_id": umid_id, "status": "deactivated"}


@router.get("/{umid_id}/code", response_model=DisplayCode)
async def get_display_code(
    umid_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Only the patient sees their own live code."""
    umid = await lifecycle.get_umid(db, umid_id)
    require_self(caller, umid.patient_id)
    return await lifecycle.get_display_code(db, umid_id)


@router.get("/{umid_id}/logs", response_model=List[AccessLogView])
async def get_access_logs(
    umid_id: str,
    limit: int = Query(default=settings.ACCESS_LOG_DEFAULT_LIMIT, ge=1, le=settings.ACCESS_LOG_MAX_LIMIT),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, umid_id, caller)
    return await lifecycle.get_access_logs(db, umid_id, limit)


# ── Helpers ───────────────────────────────────────────────────────────────────
async def _owned(db: AsyncSession, umid_id: str, caller: Caller) -> UMIDView:
    umid = await lifecycle.get_umid(db, umid_id)
    require_owner_or_admin(caller, umid.patient_id)
    return umid

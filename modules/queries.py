"""
modules/queries.py — Query Gateway
====================================
Role-filtered listings of UMIDs. Independent of the code-verification flow.

    patient  → their own UMIDs (active and deactivated)
    admin    → all UMIDs, filterable by is_active
    clinical → nothing here; clinical reads go through request_access()
    anyone   → their own scan history (the access log, by accessor)

No listing ever carries a TOTP secret: UMIDView has no field for it.
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from core.policy import is_clinical_role, require_admin, require_self
from core.schemas import AccessLogView, Caller, UMIDFilters, UMIDView
from db.store import CredentialStore
from modules.audit import AuditLogger

logger = logging.getLogger("umid.modules.queries")


async def get_patient_umids(db: AsyncSession, caller: Caller, patient_id: str) -> List[UMIDView]:
    """Self-access only. Newest first."""
    require_self(caller, patient_id)
    records = await CredentialStore(db).query_umids(patient_id=patient_id)
    return [UMIDView.from_record(r) for r in records]


async def get_all_umids(
    db: AsyncSession,
    caller: Caller,
    filters: Optional[UMIDFilters] = None,
) -> List[UMIDView]:
    """Administrative roles only."""
    if is_clinical_role(caller.role):
        logger.info(f"Clinical role '{caller.role}' asked for a UMID listing — use request_access instead")
    require_admin(caller)

    filters = filters or UMIDFilters()
    limit = min(filters.limit, settings.ADMIN_LIST_MAX_LIMIT)
    records = await CredentialStore(db).query_umids(
        is_active=filters.is_active,
        limit=limit,
        offset=filters.offset,
    )
    logger.info(f"Admin {caller.id} listed {len(records)} UMIDs (is_active={filters.is_active})")
    return [UMIDView.from_record(r) for r in records]


async def get_scan_history(db: AsyncSession, caller: Caller, limit: Optional[int] = None) -> List[AccessLogView]:
    """The caller's own access attempts, newest first. Nobody reads another accessor's history."""
    logs = await AuditLogger(CredentialStore(db)).list_for_accessor(caller.id, limit)
    return [AccessLogView.from_record(log) for log in logs]

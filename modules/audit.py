"""
modules/audit.py — Audit Logger
=================================
Append-only record of every access attempt against a UMID.
Only modules/access.py writes here. There is no update or delete path.
"""

import logging
from typing import List, Optional

from config import settings
from core.schemas import AccessOutcome, FailureReason
from db.models import UMIDAccessLog, utcnow
from db.store import CredentialStore

logger = logging.getLogger("umid.audit")


class AuditLogger:

    def __init__(self, store: CredentialStore):
        self.store = store

    async def record(
        self,
        umid_id: str,
        accessor_id: str,
        accessor_role: str,
        outcome: AccessOutcome,
        scope_granted: Optional[List[str]] = None,
        failure_reason: Optional[FailureReason] = None,
        access_type: str = "scan",
        purpose: Optional[str] = None,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> UMIDAccessLog:
        """Append one log entry. Failures carry a reason and no scope."""
        verified = outcome is not AccessOutcome.denied
        if verified and failure_reason is not None:
            raise ValueError("a verified access cannot carry a failure reason")
        if not verified and failure_reason is None:
            raise ValueError("a denied access must carry a failure reason")

        log = UMIDAccessLog(
            umid_id=umid_id,
            accessor_id=accessor_id,
            accessor_role=accessor_role,
            access_time=utcnow(),
            verified=verified,
            outcome=outcome.value,
            scope_granted=list(scope_granted or []) if verified else [],
            failure_reason=failure_reason.value if failure_reason else None,
            access_type=access_type,
            purpose=purpose,
            device_id=device_id,
            ip_address=ip_address,
        )
        await self.store.append_log(log)
        logger.info(
            f"Access {outcome.value}: {accessor_id} ({accessor_role}) → UMID {umid_id}"
            + (f" reason={failure_reason.value}" if failure_reason else f" fields={len(log.scope_granted)}")
        )
        return log

    async def list_for_umid(self, umid_id: str, limit: Optional[int] = None) -> List[UMIDAccessLog]:
        """Most recent first, bounded by `limit` (clamped to the configured max)."""
        limit = limit or settings.ACCESS_LOG_DEFAULT_LIMIT
        limit = max(1, min(limit, settings.ACCESS_LOG_MAX_LIMIT))
        return await self.store.query_logs(umid_id, limit)

    async def list_for_accessor(self, accessor_id: str, limit: Optional[int] = None) -> List[UMIDAccessLog]:
        """Everything `accessor_id` has attempted, across UMIDs. Most recent first."""
        limit = limit or settings.SCAN_HISTORY_DEFAULT_LIMIT
        limit = max(1, min(limit, settings.ACCESS_LOG_MAX_LIMIT))
        return await self.store.query_logs_by_accessor(accessor_id, limit)

"""
db/store.py — Credential Store Adapter
========================================
The only code that talks SQL. Workflows in modules/ go through this class,
never through the session directly.

Contract:
    get_umid / find_umid       → read one record (None if absent)
    conditional_insert         → insert a new active UMID; ConflictError if the
                                 patient already has one (compare-and-set via
                                 the partial unique index, no pre-read)
    conditional_deactivate     → UPDATE ... WHERE is_active; returns rows hit
    conditional_update         → UPDATE ... WHERE is_active AND version = expected
    put_version                → write an immutable snapshot
    query_umids                → filtered listing
    append_log / query_logs    → audit collection (insert-only), by UMID
    query_logs_by_accessor     → the same collection, by who accessed
    commit                     → end the operation's single transaction

Any database failure other than an integrity violation is surfaced as
StoreUnavailable. Nothing here retries.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, StoreUnavailable
from core.identity import is_umid_number
from db.models import UMIDAccessLog, UMIDRecord, UMIDVersion

logger = logging.getLogger("umid.store")


class CredentialStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _unavailable(self, exc: SQLAlchemyError, action: str):
        logger.error(f"Credential store failure during {action}: {exc.__class__.__name__}")
        await self.db.rollback()
        raise StoreUnavailable(f"Credential store unavailable during {action}.") from exc

    # ── UMID records ───────────────────────────────────────────────────────
    async def get_umid(self, umid_id: str) -> Optional[UMIDRecord]:
        try:
            result = await self.db.execute(select(UMIDRecord).where(UMIDRecord.id == umid_id))
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "get_umid")
        return result.scalars().first()

    async def find_umid(self, ref: str) -> Optional[UMIDRecord]:
        """Resolve by printable UMID number or by record id."""
        column = UMIDRecord.umid_number if is_umid_number(ref) else UMIDRecord.id
        try:
            result = await self.db.execute(select(UMIDRecord).where(column == ref))
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "find_umid")
        return result.scalars().first()

    async def conditional_insert(self, record: UMIDRecord, first_version: UMIDVersion):
        """Insert a new active UMID and its first snapshot, atomically."""
        self.db.add(record)
        self.db.add(first_version)
        try:
            await self.db.flush()
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            logger.warning(f"Issue rejected: patient {record.patient_id} already has an active UMID")
            raise ConflictError(
                f"Patient '{record.patient_id}' already has an active UMID. "
                "Update it or deactivate it before issuing a new one."
            ) from exc
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "conditional_insert")

    async def conditional_deactivate(self, umid_id: str, at: datetime) -> int:
        try:
            result = await self.db.execute(
                update(UMIDRecord)
                .where(UMIDRecord.id == umid_id, UMIDRecord.is_active == True)  # noqa: E712
                .values(is_active=False, deactivated_at=at, updated_at=at)
            )
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "conditional_deactivate")
        return result.rowcount

    async def conditional_update(self, umid_id: str, expected_version: int, values: dict) -> int:
        """
        UPDATE ... WHERE id AND is_active AND version = expected_version.
        Returns rows hit: 0 means the UMID was deactivated or changed since
        it was read. The in-session record is not touched; refresh it after.
        """
        try:
            result = await self.db.execute(
                update(UMIDRecord)
                .where(
                    UMIDRecord.id == umid_id,
                    UMIDRecord.is_active == True,  # noqa: E712
                    UMIDRecord.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "conditional_update")
        return result.rowcount

    async def refresh(self, record: UMIDRecord):
        try:
            await self.db.refresh(record)
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "refresh")

    async def rollback(self):
        await self.db.rollback()

    async def put_version(self, snapshot: UMIDVersion):
        self.db.add(snapshot)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(
                f"UMID '{snapshot.umid_id}' was changed concurrently; reload and retry."
            ) from exc
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "put_version")

    async def query_umids(
        self,
        patient_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[UMIDRecord]:
        query = select(UMIDRecord)
        if patient_id is not None:
            query = query.where(UMIDRecord.patient_id == patient_id)
        if is_active is not None:
            query = query.where(UMIDRecord.is_active == is_active)
        query = query.order_by(UMIDRecord.created_at.desc(), UMIDRecord.id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "query_umids")
        return list(result.scalars().all())

    # ── Audit collection ───────────────────────────────────────────────────
    async def append_log(self, log: UMIDAccessLog) -> UMIDAccessLog:
        self.db.add(log)
        try:
            await self.db.flush()   # assigns log.id
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "append_log")
        return log

    async def query_logs(self, umid_id: str, limit: int) -> List[UMIDAccessLog]:
        try:
            result = await self.db.execute(
                select(UMIDAccessLog)
                .where(UMIDAccessLog.umid_id == umid_id)
                .order_by(UMIDAccessLog.access_time.desc(), UMIDAccessLog.id.desc())
                .limit(limit)
            )
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "query_logs")
        return list(result.scalars().all())

    async def query_logs_by_accessor(self, accessor_id: str, limit: int) -> List[UMIDAccessLog]:
        try:
            result = await self.db.execute(
                select(UMIDAccessLog)
                .where(UMIDAccessLog.accessor_id == accessor_id)
                .order_by(UMIDAccessLog.access_time.desc(), UMIDAccessLog.id.desc())
                .limit(limit)
            )
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "query_logs_by_accessor")
        return list(result.scalars().all())

    async def commit(self):
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self._unavailable(exc, "commit")

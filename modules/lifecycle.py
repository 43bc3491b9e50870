"""
modules/lifecycle.py — UMID Lifecycle Manager
===============================================
Issue, mutate and deactivate UMIDs.

States:
    Unissued → Active → Deactivated   (terminal — a new UMID must be issued)

Flow (every operation is one transaction):
    load record → check state → build new snapshot → write record + version → commit

issue() is the ONLY call that ever returns the plaintext TOTP secret.
"""

import logging
import time
from typing import List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from core.crypto import crypto_engine
from core.errors import ConflictError, NotFoundError
from core.identity import QR_TOKEN_TYPE, generate_umid_number
from core.schemas import (
    AccessLogView,
    DisplayCode,
    IssuedUMID,
    LinkedMedicalData,
    LinkedMedicalDataUpdate,
    MedicalAlert,
    SecuritySettings,
    SecuritySettingsUpdate,
    UMIDView,
)
from core.totp import Clock, totp_engine
from db.models import UMIDRecord, UMIDVersion, new_uuid, utcnow
from db.store import CredentialStore
from modules.audit import AuditLogger

logger = logging.getLogger("umid.modules.lifecycle")


async def issue(
    db: AsyncSession,
    patient_id: str,
    linked_medical_data: Union[LinkedMedicalData, dict, None] = None,
    security_overrides: Union[SecuritySettingsUpdate, dict, None] = None,
    issued_by: Optional[str] = None,
) -> IssuedUMID:
    """
    Issue a new UMID for a patient.
    Raises ConflictError if the patient already has an active one; the
    existing UMID is left untouched.
    """
    linked = _as_linked(linked_medical_data)
    security = _apply_security(SecuritySettings(), security_overrides)

    secret = totp_engine.generate_secret()
    now = utcnow()
    record = UMIDRecord(
        id=new_uuid(),
        umid_number=generate_umid_number(patient_id),
        patient_id=patient_id,
        secret_encrypted=crypto_engine.encrypt(secret),
        linked_medical_data=linked.model_dump(mode="json"),
        security_settings=security.model_dump(mode="json"),
        is_active=True,
        version=1,
        created_at=now,
        updated_at=now,
    )
    first_version = UMIDVersion(
        umid_id=record.id,
        version=1,
        linked_medical_data=record.linked_medical_data,
        security_settings=record.security_settings,
        changed_by=issued_by or patient_id,
        created_at=now,
    )

    # Compare-and-set: the partial unique index rejects a second active UMID
    await CredentialStore(db).conditional_insert(record, first_version)
    logger.info(f"UMID {record.umid_number} issued for patient {patient_id}")

    view = UMIDView.from_record(record)
    return IssuedUMID(
        **view.model_dump(),
        secret=secret,
        provisioning_uri=totp_engine.provisioning_uri(secret, record.umid_number),
    )


async def get_umid(db: AsyncSession, umid_id: str) -> UMIDView:
    """Any state. Secret-free."""
    record = await CredentialStore(db).get_umid(umid_id)
    if record is None:
        raise NotFoundError(f"UMID '{umid_id}' not found.")
    return UMIDView.from_record(record)


async def update_linked_data(
    db: AsyncSession,
    umid_id: str,
    updates: Union[LinkedMedicalDataUpdate, dict],
    changed_by: Optional[str] = None,
) -> UMIDView:
    """Merge `updates` into the current snapshot as a new version."""
    if isinstance(updates, dict):
        updates = LinkedMedicalDataUpdate.model_validate(updates)

    store = CredentialStore(db)
    record = await _load_active(store, umid_id)
    current = LinkedMedicalData.model_validate(record.linked_medical_data)
    merged = LinkedMedicalData.model_validate({
        **current.model_dump(mode="json"),
        **updates.model_dump(mode="json", exclude_unset=True),
    })
    view = await _write_version(store, record, merged, _security_of(record), changed_by)
    logger.info(f"UMID {record.umid_number} linked data updated → v{view.version}")
    return view


async def update_security_settings(
    db: AsyncSession,
    umid_id: str,
    overrides: Union[SecuritySettingsUpdate, dict],
    changed_by: Optional[str] = None,
) -> UMIDView:
    """Change tolerance / rotation / role map / override. The secret never changes."""
    store = CredentialStore(db)
    record = await _load_active(store, umid_id)
    security = _apply_security(_security_of(record), overrides)
    view = await _write_version(
        store, record, LinkedMedicalData.model_validate(record.linked_medical_data), security, changed_by
    )
    logger.info(f"UMID {record.umid_number} security settings updated → v{view.version}")
    return view


async def add_medical_alert(
    db: AsyncSession,
    umid_id: str,
    alert: Union[MedicalAlert, dict],
    changed_by: Optional[str] = None,
) -> UMIDView:
    if isinstance(alert, dict):
        alert = MedicalAlert.model_validate(alert)
    alert = alert.model_copy(update={"date_added": utcnow()})

    store = CredentialStore(db)
    record = await _load_active(store, umid_id)
    snapshot = LinkedMedicalData.model_validate(record.linked_medical_data).model_dump(mode="json")
    snapshot["medical_alerts"].append(alert.model_dump(mode="json"))
    linked = LinkedMedicalData.model_validate(snapshot)     # re-checks list bounds
    view = await _write_version(store, record, linked, _security_of(record), changed_by or alert.added_by)
    logger.info(f"UMID {record.umid_number} {alert.severity} {alert.type} alert added → v{view.version}")
    return view


async def deactivate(db: AsyncSession, umid_id: str) -> None:
    """
    Active → Deactivated. Idempotent: a second call is a no-op.
    The record and its audit history are retained.
    """
    store = CredentialStore(db)
    record = await store.get_umid(umid_id)
    if record is None:
        raise NotFoundError(f"UMID '{umid_id}' not found.")
    if not record.is_active:
        logger.info(f"UMID {record.umid_number} already deactivated — no-op")
        return

    at = max(utcnow(), record.updated_at)
    rows = await store.conditional_deactivate(umid_id, at)
    await store.commit()
    if rows:
        logger.info(f"UMID {record.umid_number} deactivated")


async def get_access_logs(
    db: AsyncSession,
    umid_id: str,
    limit: Optional[int] = None,
) -> List[AccessLogView]:
    """Most-recent-first. Pure read."""
    logs = await AuditLogger(CredentialStore(db)).list_for_umid(umid_id, limit)
    return [AccessLogView.from_record(log) for log in logs]


async def get_display_code(
    db: AsyncSession,
    umid_id: str,
    clock: Clock = time.time,
) -> DisplayCode:
    """
    Current code + a rotating QR token for the owner's screen.
    Computed on the fly — neither value is stored.
    """
    record = await _load_active(CredentialStore(db), umid_id)
    security = _security_of(record)
    secret = crypto_engine.decrypt(record.secret_encrypted)
    now = clock()
    qr_token = crypto_engine.issue_qr_token(
        {"type": QR_TOKEN_TYPE, "umid_id": record.id, "umid_number": record.umid_number},
        at=now,
    )
    return DisplayCode(
        umid_id=record.id,
        umid_number=record.umid_number,
        code=totp_engine.current_code(secret, clock),
        expires_in_seconds=totp_engine.seconds_remaining(clock),
        qr_token=qr_token,
        qr_expires_in_seconds=security.qr_rotation_seconds,
    )


# ── Helpers ───────────────────────────────────────────────────────────────────
def _as_linked(data) -> LinkedMedicalData:
    if data is None:
        return LinkedMedicalData()
    if isinstance(data, LinkedMedicalData):
        return data
    return LinkedMedicalData.model_validate(data)


def _security_of(record: UMIDRecord) -> SecuritySettings:
    return SecuritySettings.model_validate(record.security_settings)


def _apply_security(base: SecuritySettings, overrides) -> SecuritySettings:
    if overrides is None:
        return base
    if isinstance(overrides, dict):
        overrides = SecuritySettingsUpdate.model_validate(overrides)
    return SecuritySettings.model_validate({
        **base.model_dump(mode="json"),
        **overrides.model_dump(mode="json", exclude_none=True),
    })


async def _load_active(store: CredentialStore, umid_id: str) -> UMIDRecord:
    record = await store.get_umid(umid_id)
    if record is None or not record.is_active:
        raise NotFoundError(f"No active UMID '{umid_id}'.")
    return record


async def _write_version(
    store: CredentialStore,
    record: UMIDRecord,
    linked: LinkedMedicalData,
    security: SecuritySettings,
    changed_by: Optional[str],
) -> UMIDView:
    """
    Compare-and-set on (is_active, version): a deactivation or another
    update committed since `record` was read makes this write miss.
    """
    now = max(utcnow(), record.updated_at)
    umid_id, expected = record.id, record.version
    values = dict(
        linked_medical_data=linked.model_dump(mode="json"),
        security_settings=security.model_dump(mode="json"),
        version=expected + 1,
        updated_at=now,
    )
    if not await store.conditional_update(umid_id, expected, values):
        await store.rollback()
        current = await store.get_umid(umid_id)
        if current is None or not current.is_active:
            logger.warning(f"UMID {umid_id} deactivated before v{expected + 1} could be written")
            raise NotFoundError(f"No active UMID '{umid_id}'.")
        logger.warning(f"UMID {umid_id} moved past v{expected} before this update was written")
        raise ConflictError(f"UMID '{umid_id}' was changed concurrently; reload and retry.")

    await store.refresh(record)
    await store.put_version(UMIDVersion(
        umid_id=umid_id,
        version=expected + 1,
        linked_medical_data=values["linked_medical_data"],
        security_settings=values["security_settings"],
        changed_by=changed_by,
        created_at=now,
    ))
    view = UMIDView.from_record(record)
    await store.commit()
    return view

"""
modules/access.py — Access Policy Engine
==========================================
The verification + authorization gate. Every clinical read of a UMID comes
through request_access().

Flow:
    resolve UMID → decrypt secret → throttle check + verify code → resolve scope → project
                 ↘ any failure → audit log (verified=false) → failed result
    success → audit log (verified=true, exact fields) → result + access token

Every call writes exactly one audit log entry, success or failure.
A bad code is a result, not an exception.
"""

import logging
import time
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.crypto import InvalidToken, crypto_engine
from core.identity import QR_TOKEN_TYPE
from core.policy import normalize_role, project, resolve_scope
from core.ratelimit import FailureThrottle, failure_throttle
from core.schemas import (
    AccessOutcome,
    AccessResult,
    FailureReason,
    LinkedMedicalData,
    SecuritySettings,
    sections_for,
)
from core.totp import Clock, CodeCheck, totp_engine
from db.store import CredentialStore
from modules.audit import AuditLogger

logger = logging.getLogger("umid.modules.access")

_CHECK_REASONS = {
    CodeCheck.malformed: FailureReason.malformed_code,
    CodeCheck.expired: FailureReason.expired_code,
    CodeCheck.invalid: FailureReason.invalid_code,
}

UNKNOWN_UMID = "unknown"


async def request_access(
    db: AsyncSession,
    umid_ref: str,
    presented_code: str,
    accessor_role: str,
    accessor_id: str,
    access_type: str = "scan",
    purpose: Optional[str] = None,
    device_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    clock: Clock = time.time,
    throttle: FailureThrottle = failure_throttle,
) -> AccessResult:
    """
    Verify `presented_code` against the UMID (by id or UMID number) and
    return the projection `accessor_role` is allowed to see.
    """
    store = CredentialStore(db)
    audit = AuditLogger(store)
    role = normalize_role(accessor_role)
    context = dict(access_type=access_type, purpose=purpose, device_id=device_id, ip_address=ip_address)

    # 1. Resolve
    record = await store.find_umid(umid_ref) if umid_ref else None
    if record is None or not record.is_active:
        umid_key = record.id if record is not None else (umid_ref or UNKNOWN_UMID)[:64]
        return await _deny(store, audit, umid_key, accessor_id, role, FailureReason.inactive_or_missing, context)

    # 2. Unwrap the secret; without it nothing can be verified
    security = SecuritySettings.model_validate(record.security_settings)
    try:
        secret = crypto_engine.decrypt(record.secret_encrypted)
    except InvalidToken:
        logger.error(f"UMID {record.id}: stored secret failed to decrypt, access refused")
        return await _deny(store, audit, record.id, accessor_id, role, FailureReason.secret_unavailable, context)

    # 3. Throttle + verify (failed verifications only count)
    check = await throttle.attempt(
        (record.id, accessor_id),
        lambda: totp_engine.check(secret, presented_code, clock, security.tolerance_steps),
    )
    if check is None:
        return await _deny(store, audit, record.id, accessor_id, role, FailureReason.rate_limited, context)
    if check is not CodeCheck.valid:
        return await _deny(store, audit, record.id, accessor_id, role, _CHECK_REASONS[check], context)

    # 4. Scope + projection
    outcome, fields = resolve_scope(security, role)
    data = project(LinkedMedicalData.model_validate(record.linked_medical_data), fields)
    if outcome is AccessOutcome.emergency:
        context["access_type"] = "emergency_override"

    # 5. Audit, then answer
    log = await audit.record(record.id, accessor_id, role, outcome, scope_granted=fields, **context)
    await store.commit()

    token = crypto_engine.create_access_token(
        accessor_id,
        {"umid_id": record.id, "role": role, "scope": fields, "outcome": outcome.value},
    )
    return AccessResult(
        verified=True,
        outcome=outcome,
        umid_id=record.id,
        scope_granted=fields,
        data=data,
        sections=sections_for(fields),
        access_token=token,
        log_id=log.id,
    )


async def redeem_qr_token(
    db: AsyncSession,
    qr_token: str,
    presented_code: str,
    accessor_role: str,
    accessor_id: str,
    purpose: Optional[str] = None,
    device_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    clock: Clock = time.time,
    throttle: FailureThrottle = failure_throttle,
) -> AccessResult:
    """
    Scanner path: unwrap a rotating QR token, check its age against the
    UMID's rotation interval, then run the normal access flow.
    """
    store = CredentialStore(db)
    audit = AuditLogger(store)
    role = normalize_role(accessor_role)
    context = dict(access_type="scan", purpose=purpose, device_id=device_id, ip_address=ip_address)

    try:
        payload, issued_at = crypto_engine.read_qr_token(qr_token)
    except (InvalidToken, ValueError, TypeError, AttributeError):
        payload, issued_at = None, None
    if not isinstance(payload, dict) or payload.get("type") != QR_TOKEN_TYPE or not payload.get("umid_id"):
        return await _deny(store, audit, UNKNOWN_UMID, accessor_id, role, FailureReason.invalid_qr_token, context)

    umid_id = str(payload["umid_id"])
    record = await store.get_umid(umid_id)
    if record is not None and record.is_active:
        rotation = SecuritySettings.model_validate(record.security_settings).qr_rotation_seconds
        if clock() - issued_at > rotation:
            return await _deny(store, audit, record.id, accessor_id, role, FailureReason.expired_qr_token, context)

    return await request_access(
        db,
        umid_id,
        presented_code,
        role,
        accessor_id,
        purpose=purpose,
        device_id=device_id,
        ip_address=ip_address,
        clock=clock,
        throttle=throttle,
    )


async def _deny(
    store: CredentialStore,
    audit: AuditLogger,
    umid_id: str,
    accessor_id: str,
    role: str,
    reason: FailureReason,
    context: dict,
) -> AccessResult:
    log = await audit.record(umid_id, accessor_id, role, AccessOutcome.denied, failure_reason=reason, **context)
    await store.commit()
    return AccessResult(
        verified=False,
        outcome=AccessOutcome.denied,
        umid_id=umid_id,
        failure_reason=reason,
        log_id=log.id,
    )

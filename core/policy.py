"""
core/policy.py — Access Policy Rules
======================================
The pure half of the security gate: given a verified accessor's role and a
UMID's security settings, decide which linked fields they may see.
modules/access.py wraps this with verification and auditing.

Projection rules:
    role listed with fields     → exactly those fields
    role listed with no fields  → verified, zero data (explicit deny;
                                  emergency override does NOT widen it)
    role not listed + override  → EMERGENCY_FIELDS only
    role not listed, no override→ verified, zero data

Caller guards for the owner / admin surfaces live here too.
"""

import logging
from typing import Iterable, List, Tuple

from config import settings
from core.errors import Unauthorized
from core.schemas import AccessOutcome, Caller, LinkedMedicalData, SecuritySettings

logger = logging.getLogger("umid.policy")

# Minimal subset any verified accessor gets when emergency override is on
EMERGENCY_FIELDS = ("blood_type", "allergies", "emergency_contacts")


def normalize_role(role: str) -> str:
    return (role or "").strip().lower()


def resolve_scope(security: SecuritySettings, accessor_role: str) -> Tuple[AccessOutcome, List[str]]:
    """Map a verified accessor's role to (outcome, granted fields)."""
    role = normalize_role(accessor_role)

    if role in security.allowed_roles:
        fields = list(security.allowed_roles[role])
        if fields:
            return AccessOutcome.granted, fields
        logger.info(f"Role '{role}' listed with an empty field set — verified, no data")
        return AccessOutcome.granted_empty, []

    if security.emergency_override:
        logger.warning(f"Role '{role}' not listed — emergency override grants minimal subset")
        return AccessOutcome.emergency, list(EMERGENCY_FIELDS)

    logger.info(f"Role '{role}' not listed and no emergency override — verified, no data")
    return AccessOutcome.granted_empty, []


def project(linked: LinkedMedicalData, fields: Iterable[str]) -> dict:
    """The scoped projection: only the granted keys of the snapshot."""
    snapshot = linked.model_dump(mode="json")
    return {field: snapshot[field] for field in fields if field in snapshot}


# ── Caller guards ─────────────────────────────────────────────────────────────
def is_admin_role(role: str) -> bool:
    return normalize_role(role) in settings.ADMIN_ROLES


def is_clinical_role(role: str) -> bool:
    return normalize_role(role) in settings.CLINICAL_ROLES


def require_self(caller: Caller, patient_id: str):
    """Only the patient may list their own UMIDs."""
    if caller.id != patient_id:
        logger.warning(f"Self-access DENIED: {caller.id} ({caller.role}) → patient {patient_id}")
        raise Unauthorized("Only the patient may list their own UMIDs.")


def require_admin(caller: Caller):
    if not is_admin_role(caller.role):
        logger.warning(f"Admin access DENIED: {caller.id} ({caller.role})")
        raise Unauthorized("Administrative role required.")


def require_owner_or_admin(caller: Caller, patient_id: str):
    """Lifecycle changes: the owning patient, or an administrative role."""
    if caller.id == patient_id or is_admin_role(caller.role):
        return
    logger.warning(f"Lifecycle access DENIED: {caller.id} ({caller.role}) → patient {patient_id}")
    raise Unauthorized("Only the owning patient or an administrator may change this UMID.")

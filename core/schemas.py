"""
core/schemas.py — UMID Value Objects
=====================================
Pydantic models shared by the engines, the workflows in modules/ and the
API routers. Nothing in here ever carries the TOTP secret except IssuedUMID,
which is returned exactly once, by issue().
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings

MAX_LIST_ITEMS = 50
BoundedStr = Annotated[str, Field(max_length=500)]

# Every field of the linked snapshot that a role can be granted.
LinkedField = Literal[
    "name",
    "date_of_birth",
    "blood_type",
    "allergies",
    "chronic_conditions",
    "current_medications",
    "emergency_contacts",
    "emergency_medical_info",
    "dnr_status",
    "organ_donor_status",
    "medical_alerts",
]

BloodType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]


# ── Profile sections ──────────────────────────────────────────────────────────
class ProfileSection(str, Enum):
    personal = "personal"
    contact = "contact"
    medical = "medical"
    security = "security"
    accessibility = "accessibility"
    preferences = "preferences"
    activity = "activity"


# Closed mapping: which linked fields belong to which profile section.
# security / accessibility / preferences / activity carry no linked fields.
SECTION_FIELDS: Dict[ProfileSection, tuple] = {
    ProfileSection.personal: ("name", "date_of_birth", "organ_donor_status"),
    ProfileSection.contact: ("emergency_contacts",),
    ProfileSection.medical: (
        "blood_type",
        "allergies",
        "chronic_conditions",
        "current_medications",
        "emergency_medical_info",
        "dnr_status",
        "medical_alerts",
    ),
    ProfileSection.security: (),
    ProfileSection.accessibility: (),
    ProfileSection.preferences: (),
    ProfileSection.activity: (),
}


def sections_for(fields) -> List[ProfileSection]:
    """Profile sections touched by a set of linked fields, in enum order."""
    wanted = set(fields)
    return [section for section, owned in SECTION_FIELDS.items() if wanted.intersection(owned)]


# ── Linked medical data ───────────────────────────────────────────────────────
class EmergencyContact(BaseModel):
    name: str = Field(max_length=200)
    relationship: str = Field(default="", max_length=100)
    phone: str = Field(default="", max_length=50)
    email: str = Field(default="", max_length=255)


class MedicalAlert(BaseModel):
    type: Literal["allergy", "condition", "medication", "warning", "emergency"]
    severity: Literal["low", "medium", "high", "critical"]
    description: str = Field(min_length=1, max_length=500)
    added_by: str = Field(max_length=255)
    date_added: Optional[datetime] = None
    expiry_date: Optional[datetime] = None


class LinkedMedicalData(BaseModel):
    """The bounded snapshot a patient chooses to expose through the UMID."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=200)
    date_of_birth: Optional[date] = None
    blood_type: Optional[BloodType] = None
    allergies: List[BoundedStr] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    chronic_conditions: List[BoundedStr] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    current_medications: List[BoundedStr] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    emergency_contacts: List[EmergencyContact] = Field(default_factory=list, max_length=5)
    emergency_medical_info: List[BoundedStr] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    dnr_status: Optional[bool] = None
    organ_donor_status: Optional[bool] = None
    medical_alerts: List[MedicalAlert] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class LinkedMedicalDataUpdate(BaseModel):
    """Partial update: only the fields that are set get merged."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)
    date_of_birth: Optional[date] = None
    blood_type: Optional[BloodType] = None
    allergies: Optional[List[BoundedStr]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    chronic_conditions: Optional[List[BoundedStr]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    current_medications: Optional[List[BoundedStr]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    emergency_contacts: Optional[List[EmergencyContact]] = Field(default=None, max_length=5)
    emergency_medical_info: Optional[List[BoundedStr]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    dnr_status: Optional[bool] = None
    organ_donor_status: Optional[bool] = None


# ── Security settings ─────────────────────────────────────────────────────────
def _normalize_roles(value: Optional[Dict[str, List[str]]]):
    if value is None:
        return value
    normalized = {}
    for role, fields in value.items():
        key = role.strip().lower()
        if not key:
            raise ValueError("role names must not be empty")
        normalized[key] = list(dict.fromkeys(fields))   # dedupe, keep order
    return normalized


class SecuritySettings(BaseModel):
    """Embedded value object, versioned together with the UMID it belongs to."""

    model_config = ConfigDict(extra="forbid")

    tolerance_steps: int = Field(default_factory=lambda: settings.DEFAULT_TOLERANCE_STEPS, ge=0, le=10)
    qr_rotation_seconds: int = Field(default_factory=lambda: settings.QR_ROTATION_SECONDS, ge=30, le=3600)
    allowed_roles: Dict[str, List[LinkedField]] = Field(default_factory=dict)
    emergency_override: bool = True

    @field_validator("allowed_roles")
    @classmethod
    def normalize_roles(cls, value):
        return _normalize_roles(value)


class SecuritySettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tolerance_steps: Optional[int] = Field(default=None, ge=0, le=10)
    qr_rotation_seconds: Optional[int] = Field(default=None, ge=30, le=3600)
    allowed_roles: Optional[Dict[str, List[LinkedField]]] = None
    emergency_override: Optional[bool] = None

    @field_validator("allowed_roles")
    @classmethod
    def normalize_roles(cls, value):
        return _normalize_roles(value)


# ── Read models ───────────────────────────────────────────────────────────────
class UMIDView(BaseModel):
    """A UMID as any reader sees it. There is no secret field to leak."""

    id: str
    umid_number: str
    patient_id: str
    linked_medical_data: LinkedMedicalData
    security_settings: SecuritySettings
    is_active: bool
    version: int
    created_at: datetime
    updated_at: datetime
    deactivated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "UMIDView":
        return cls(
            id=record.id,
            umid_number=record.umid_number,
            patient_id=record.patient_id,
            linked_medical_data=LinkedMedicalData.model_validate(record.linked_medical_data),
            security_settings=SecuritySettings.model_validate(record.security_settings),
            is_active=record.is_active,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
            deactivated_at=record.deactivated_at,
        )


class IssuedUMID(UMIDView):
    """Returned once, by issue(): carries the plaintext secret for provisioning."""

    secret: str
    provisioning_uri: str


class DisplayCode(BaseModel):
    umid_id: str
    umid_number: str
    code: str
    expires_in_seconds: int
    qr_token: str
    qr_expires_in_seconds: int


class AccessLogView(BaseModel):
    id: int
    umid_id: str
    accessor_id: str
    accessor_role: str
    access_time: datetime
    verified: bool
    outcome: str
    scope_granted: List[str]
    failure_reason: Optional[str] = None
    access_type: str
    purpose: Optional[str] = None

    @classmethod
    def from_record(cls, log) -> "AccessLogView":
        return cls(
            id=log.id,
            umid_id=log.umid_id,
            accessor_id=log.accessor_id,
            accessor_role=log.accessor_role,
            access_time=log.access_time,
            verified=log.verified,
            outcome=log.outcome,
            scope_granted=list(log.scope_granted or []),
            failure_reason=log.failure_reason,
            access_type=log.access_type,
            purpose=log.purpose,
        )


# ── Access results ────────────────────────────────────────────────────────────
class AccessOutcome(str, Enum):
    granted = "granted"                 # verified, role subset returned
    granted_empty = "granted_empty"     # verified, zero fields permitted
    emergency = "emergency"             # verified, emergency subset returned
    denied = "denied"                   # not verified


class FailureReason(str, Enum):
    inactive_or_missing = "inactive_or_missing"
    rate_limited = "rate_limited"
    malformed_code = "malformed_code"
    expired_code = "expired_code"
    invalid_code = "invalid_code"
    invalid_qr_token = "invalid_qr_token"
    expired_qr_token = "expired_qr_token"
    secret_unavailable = "secret_unavailable"     # stored secret could not be decrypted


class AccessResult(BaseModel):
    verified: bool
    outcome: AccessOutcome
    umid_id: str
    scope_granted: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)
    sections: List[ProfileSection] = Field(default_factory=list)
    failure_reason: Optional[FailureReason] = None
    access_token: Optional[str] = None
    log_id: Optional[int] = None


# ── Callers and filters ───────────────────────────────────────────────────────
class Caller(BaseModel):
    """Who is calling, as supplied by the identity provider. Trusted as given."""

    id: str
    role: str


class UMIDFilters(BaseModel):
    is_active: Optional[bool] = None
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)

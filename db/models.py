"""
db/models.py — Database Table Definitions
==========================================
Each class = one table in the credential store.
TOTP secrets are stored ENCRYPTED (handled by core/crypto.py before saving).
Access logs live in their own append-only table and point back at the UMID
by id only, so a log can be written even for an id that never resolved.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Boolean, Text, Integer, JSON, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.session import Base


def new_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── 1. Universal Medical ID ───────────────────────────────────────────────────
class UMIDRecord(Base):
    __tablename__ = "universal_medical_ids"
    __table_args__ = (
        # At most one active UMID per patient. Two racing inserts cannot both commit.
        Index(
            "uq_umid_one_active_per_patient",
            "patient_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active = true"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    umid_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)   # UMID-XXXXXXXXXXXX
    patient_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)                # write-once
    linked_medical_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    security_settings: Mapped[dict] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deactivated_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    # Relationships (by relation, not ownership)
    versions: Mapped[list["UMIDVersion"]] = relationship(
        primaryjoin="UMIDRecord.id == foreign(UMIDVersion.umid_id)",
        order_by="UMIDVersion.version",
        viewonly=True,
    )
    access_history: Mapped[list["UMIDAccessLog"]] = relationship(
        primaryjoin="UMIDRecord.id == foreign(UMIDAccessLog.umid_id)",
        order_by="UMIDAccessLog.access_time",
        viewonly=True,
    )


# ── 2. Versioned snapshots ────────────────────────────────────────────────────
class UMIDVersion(Base):
    __tablename__ = "umid_versions"
    __table_args__ = (UniqueConstraint("umid_id", "version", name="uq_umid_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    umid_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    linked_medical_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    security_settings: Mapped[dict] = mapped_column(JSON, nullable=False)
    changed_by: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# ── 3. Access Log ─────────────────────────────────────────────────────────────
class UMIDAccessLog(Base):
    __tablename__ = "umid_access_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    umid_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)    # back-reference only
    accessor_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    accessor_role: Mapped[str] = mapped_column(String(64), nullable=False)
    access_time: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)        # granted | granted_empty | emergency | denied
    scope_granted: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    failure_reason: Mapped[str] = mapped_column(String(64), nullable=True)
    access_type: Mapped[str] = mapped_column(String(32), default="scan")    # scan | manual_entry | emergency_override
    purpose: Mapped[str] = mapped_column(String(255), nullable=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(50), nullable=True)

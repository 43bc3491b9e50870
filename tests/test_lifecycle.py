import asyncio

import pytest
from sqlalchemy import func, select

from conftest import NOW, fixed_clock, linked_profile
from core.errors import ConflictError, NotFoundError
from core.identity import is_umid_number
from core.totp import totp_engine
from db.models import UMIDRecord, UMIDVersion
from modules import lifecycle
from modules.access import request_access


async def _version_count(db, umid_id):
    result = await db.execute(select(func.count()).select_from(UMIDVersion).where(UMIDVersion.umid_id == umid_id))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_issue_returns_secret_once_and_stores_it_encrypted(db):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    assert issued.is_active and issued.version == 1
    assert is_umid_number(issued.umid_number)
    assert issued.provisioning_uri.startswith("otpauth://totp/")
    assert issued.security_settings.tolerance_steps == 1
    assert issued.security_settings.emergency_override is True

    record = await db.get(UMIDRecord, issued.id)
    assert record.secret_encrypted != issued.secret
    assert issued.secret not in record.secret_encrypted
    assert "secret" not in (await lifecycle.get_umid(db, issued.id)).model_dump()
    assert await _version_count(db, issued.id) == 1


@pytest.mark.asyncio
async def test_issue_applies_security_overrides(db):
    issued = await lifecycle.issue(
        db,
        "patient-1",
        linked_profile(),
        security_overrides={"tolerance_steps": 2, "allowed_roles": {" Doctor ": ["blood_type"]}},
    )
    assert issued.security_settings.tolerance_steps == 2
    assert issued.security_settings.allowed_roles == {"doctor": ["blood_type"]}


@pytest.mark.asyncio
async def test_second_issue_conflicts_and_leaves_original_untouched(db):
    first = await lifecycle.issue(db, "patient-1", linked_profile())

    with pytest.raises(ConflictError):
        await lifecycle.issue(db, "patient-1", {"name": "Someone Else"})

    current = await lifecycle.get_umid(db, first.id)
    assert current.is_active
    assert current.version == 1
    assert current.linked_medical_data.name == "Asha Rao"
    records = (await db.execute(select(UMIDRecord).where(UMIDRecord.patient_id == "patient-1"))).scalars().all()
    assert len(records) == 1


@pytest.mark.asyncio
async def test_concurrent_issues_yield_exactly_one_active_umid(session_factory):
    async def attempt():
        async with session_factory() as session:
            return await lifecycle.issue(session, "patient-race", linked_profile())

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

    assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    async with session_factory() as session:
        active = await session.execute(
            select(func.count()).select_from(UMIDRecord).where(
                UMIDRecord.patient_id == "patient-race", UMIDRecord.is_active == True  # noqa: E712
            )
        )
        assert active.scalar_one() == 1


@pytest.mark.asyncio
async def test_update_linked_data_merges_and_versions(db):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    updated = await lifecycle.update_linked_data(db, issued.id, {"allergies": ["penicillin", "latex"]}, "patient-1")

    assert updated.version == 2
    assert updated.linked_medical_data.allergies == ["penicillin", "latex"]
    assert updated.linked_medical_data.blood_type == "O+"
    assert updated.updated_at >= issued.updated_at
    assert await _version_count(db, issued.id) == 2


@pytest.mark.asyncio
async def test_update_security_settings_keeps_the_secret(db):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())
    record = await db.get(UMIDRecord, issued.id)
    secret_before = record.secret_encrypted

    updated = await lifecycle.update_security_settings(
        db, issued.id, {"emergency_override": False, "qr_rotation_seconds": 120}
    )

    assert updated.version == 2
    assert updated.security_settings.emergency_override is False
    assert updated.security_settings.qr_rotation_seconds == 120
    assert updated.security_settings.tolerance_steps == 1
    assert (await db.get(UMIDRecord, issued.id)).secret_encrypted == secret_before


@pytest.mark.asyncio
async def test_add_medical_alert_stamps_date_and_versions(db):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    updated = await lifecycle.add_medical_alert(
        db,
        issued.id,
        {"type": "allergy", "severity": "critical", "description": "Anaphylaxis to penicillin", "added_by": "doc-7"},
    )

    assert updated.version == 2
    [alert] = updated.linked_medical_data.medical_alerts
    assert alert.severity == "critical"
    assert alert.date_added is not None


@pytest.mark.asyncio
async def test_mutating_an_unknown_umid_is_not_found(db):
    with pytest.raises(NotFoundError):
        await lifecycle.update_linked_data(db, "missing", {"name": "x"})
    with pytest.raises(NotFoundError):
        await lifecycle.get_umid(db, "missing")
    with pytest.raises(NotFoundError):
        await lifecycle.deactivate(db, "missing")


@pytest.mark.asyncio
async def test_deactivate_is_idempotent_and_terminal(db, throttle):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    await lifecycle.deactivate(db, issued.id)
    await lifecycle.deactivate(db, issued.id)

    view = await lifecycle.get_umid(db, issued.id)
    assert view.is_active is False
    assert view.deactivated_at is not None
    with pytest.raises(NotFoundError):
        await lifecycle.update_linked_data(db, issued.id, {"name": "x"})

    code = totp_engine.current_code(issued.secret, fixed_clock())
    result = await request_access(db, issued.id, code, "doctor", "doc-1", clock=fixed_clock(), throttle=throttle)
    assert result.verified is False
    assert result.failure_reason == "inactive_or_missing"


def _interleave(monkeypatch, action):
    """Run `action` once, in its own session, right after the next _load_active read."""
    original = lifecycle._load_active
    pending = [action]

    async def load_then_interleave(store, umid_id):
        record = await original(store, umid_id)
        if pending:
            await pending.pop()(umid_id)
        return record

    monkeypatch.setattr(lifecycle, "_load_active", load_then_interleave)


@pytest.mark.asyncio
async def test_update_after_a_concurrent_deactivation_is_not_found(db, session_factory, monkeypatch):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    async def deactivate_elsewhere(umid_id):
        async with session_factory() as other:
            await lifecycle.deactivate(other, umid_id)

    _interleave(monkeypatch, deactivate_elsewhere)
    with pytest.raises(NotFoundError):
        await lifecycle.update_linked_data(db, issued.id, {"name": "changed after deactivation"}, "patient-1")

    async with session_factory() as fresh:
        record = await fresh.get(UMIDRecord, issued.id)
        assert record.is_active is False
        assert record.version == 1
        assert record.linked_medical_data["name"] == "Asha Rao"
        assert await _version_count(fresh, issued.id) == 1


@pytest.mark.asyncio
async def test_update_racing_another_update_conflicts(db, session_factory, monkeypatch):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    async def update_elsewhere(umid_id):
        async with session_factory() as other:
            await lifecycle.add_medical_alert(
                other, umid_id, {"type": "allergy", "description": "latex", "severity": "high", "added_by": "doc-1"}
            )

    _interleave(monkeypatch, update_elsewhere)
    with pytest.raises(ConflictError):
        await lifecycle.update_security_settings(db, issued.id, {"tolerance_steps": 2}, "patient-1")

    async with session_factory() as fresh:
        record = await fresh.get(UMIDRecord, issued.id)
        assert record.version == 2
        assert record.security_settings["tolerance_steps"] == 1
        assert [a["description"] for a in record.linked_medical_data["medical_alerts"]] == ["latex"]
        assert await _version_count(fresh, issued.id) == 2


@pytest.mark.asyncio
async def test_reissue_after_deactivation(db):
    first = await lifecycle.issue(db, "patient-1", linked_profile())
    await lifecycle.deactivate(db, first.id)

    second = await lifecycle.issue(db, "patient-1", linked_profile())

    assert second.id != first.id
    assert second.umid_number != first.umid_number
    assert second.secret != first.secret


@pytest.mark.asyncio
async def test_display_code_matches_the_secret(db, crypto):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())

    display = await lifecycle.get_display_code(db, issued.id, clock=fixed_clock())

    assert display.code == totp_engine.current_code(issued.secret, fixed_clock())
    assert display.expires_in_seconds == 30
    assert display.qr_expires_in_seconds == 300
    payload, issued_at = crypto.read_qr_token(display.qr_token)
    assert payload["umid_id"] == issued.id
    assert issued_at == NOW


@pytest.mark.asyncio
async def test_access_logs_are_most_recent_first_and_bounded(db, throttle):
    issued = await lifecycle.issue(db, "patient-1", linked_profile())
    for accessor in ("doc-1", "doc-2", "doc-3"):
        await request_access(db, issued.id, "000000", "doctor", accessor, clock=fixed_clock(), throttle=throttle)

    logs = await lifecycle.get_access_logs(db, issued.id)
    assert [log.accessor_id for log in logs] == ["doc-3", "doc-2", "doc-1"]

    limited = await lifecycle.get_access_logs(db, issued.id, limit=2)
    assert [log.accessor_id for log in limited] == ["doc-3", "doc-2"]

import logging

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from provider_trust_engine.notifications.dispatcher import LoggingDispatcher
from provider_trust_engine.store.trust_store import TrustStore
from provider_trust_engine.trust.errors import InvalidProfileUpdate
from provider_trust_engine.trust.profile_updates import ProfileUpdateService
from provider_trust_engine.trust.schemas import DocumentRef, OCRResult, VerificationStatus
from provider_trust_engine.trust.state_machine import TrustStateMachine
from provider_trust_engine.trust.submission import build_verification_request

PROFILE = {
    "name": "Cabinet Dr Benali",
    "phone": "0550000000",
    "address": "12 Rue Didouche Mourad",
    "city": "Alger",
    "lat": 36.7538,
    "lng": 3.0588,
    "description": "Medecine generale",
}


def _setup_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def _approved_provider(dispatcher=None):
    dispatcher = dispatcher or LoggingDispatcher()
    machine = TrustStateMachine(TrustStore(_setup_engine()), dispatcher)
    service = ProfileUpdateService(machine)
    service.apply("provider-1", PROFILE)
    request = machine.submit(
        "provider-1",
        build_verification_request(
            "provider-1",
            "Cabinet Dr Benali",
            {"license": DocumentRef(ref="provider-1/license.pdf")},
            {"license": OCRResult(success=True, overall_score=95.0)},
        ),
    )
    machine.decide(request.id, "approved")
    return machine, service


def test_phone_change_revokes_verification():
    machine, service = _approved_provider()

    result = service.apply("provider-1", {"phone": "0550000001"})

    assert result.verification_revoked is True
    assert result.modified_sensitive_fields == ["phone"]
    assert result.verification_status == VerificationStatus.PENDING
    assert result.is_public is False
    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.PENDING
    assert state.is_public is False
    assert state.last_approved_snapshot is None
    assert service.current_profile("provider-1")["phone"] == "0550000001"
    assert machine.latest_request("provider-1").status.value == "approved"


def test_description_edit_is_inert():
    machine, service = _approved_provider()

    result = service.apply("provider-1", {"description": "Pediatrie et vaccination"})

    assert result.verification_revoked is False
    assert result.modified_sensitive_fields == []
    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.APPROVED
    assert state.is_public is True
    assert service.current_profile("provider-1")["description"] == "Pediatrie et vaccination"


def test_resaving_same_protected_values_is_inert():
    machine, service = _approved_provider()

    result = service.apply(
        "provider-1",
        {"phone": " 0550000000 ", "lat": 36.75380000001, "lng": 3.0588, "city": "Alger"},
    )

    assert result.verification_revoked is False
    assert machine.get_state("provider-1").is_public is True


def test_revocation_event_is_sent_after_commit():
    dispatcher = LoggingDispatcher()
    _, service = _approved_provider(dispatcher)

    service.apply("provider-1", {"address": "5 Rue Larbi Ben Mhidi", "phone": "0661000000"})

    event = dispatcher.sent[-1]
    assert event.event_type == "verification_revoked"
    assert event.details["priority"] == "high"
    assert event.details["modifiedFields"] == ["address", "phone"]
    assert event.details["providerName"] == "Cabinet Dr Benali"


def test_notification_failure_does_not_roll_back(caplog):
    class BrokenDispatcher(LoggingDispatcher):
        def dispatch(self, event):
            if event.event_type == "verification_revoked":
                raise RuntimeError("webhook down")
            super().dispatch(event)

    machine, service = _approved_provider(BrokenDispatcher())

    with caplog.at_level(logging.ERROR):
        result = service.apply("provider-1", {"phone": "0550000001"})

    assert result.verification_revoked is True
    assert machine.get_state("provider-1").verification_status == VerificationStatus.PENDING
    assert service.current_profile("provider-1")["phone"] == "0550000001"
    assert "Revocation notification failed for provider=provider-1" in caplog.text


def test_failed_profile_write_rolls_back_revocation(monkeypatch):
    machine, service = _approved_provider()

    def broken_upsert(conn, provider_id, fields):
        raise RuntimeError("disk full")

    monkeypatch.setattr(machine.store, "upsert_profile_fields", broken_upsert)

    with pytest.raises(RuntimeError):
        service.apply("provider-1", {"phone": "0550000001"})

    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.APPROVED
    assert state.is_public is True
    monkeypatch.undo()
    assert service.current_profile("provider-1")["phone"] == "0550000000"


def test_unknown_field_is_rejected_before_any_write():
    machine, service = _approved_provider()

    with pytest.raises(InvalidProfileUpdate) as excinfo:
        service.apply("provider-1", {"phone": "0550000001", "isPublic": True})

    assert excinfo.value.unknown_fields == ["isPublic"]
    assert machine.get_state("provider-1").verification_status == VerificationStatus.APPROVED
    assert service.current_profile("provider-1")["phone"] == "0550000000"


def test_preview_reports_revocation_without_writing():
    machine, service = _approved_provider()

    preview = service.preview("provider-1", {"city": "Oran", "description": "x"})

    assert preview.would_revoke is True
    assert preview.modified_sensitive_fields == ["city"]
    assert machine.get_state("provider-1").is_public is True
    assert service.current_profile("provider-1")["city"] == "Alger"


def test_edits_before_approval_never_revoke():
    machine = TrustStateMachine(TrustStore(_setup_engine()), LoggingDispatcher())
    service = ProfileUpdateService(machine)

    result = service.apply("provider-2", {"phone": "0770000000"})

    assert result.verification_revoked is False
    assert result.verification_status == VerificationStatus.NONE

import gc
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from provider_trust_engine.notifications.dispatcher import LoggingDispatcher
from provider_trust_engine.store.trust_store import TrustStore
from provider_trust_engine.trust.errors import (
    ConcurrentSubmissionConflict,
    InvalidStateTransition,
    RequestNotFound,
)
from provider_trust_engine.trust.schemas import (
    DocumentRef,
    OCRResult,
    RequestStatus,
    VerificationStatus,
)
from provider_trust_engine.trust import state_machine
from provider_trust_engine.trust.state_machine import TrustStateMachine, provider_lock
from provider_trust_engine.trust.submission import build_verification_request


def _setup_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def _machine():
    dispatcher = LoggingDispatcher()
    return TrustStateMachine(TrustStore(_setup_engine()), dispatcher), dispatcher


def _request(provider_id="provider-1", success=True, score=92.0):
    return build_verification_request(
        provider_id,
        "Ahmed Benali",
        {"license": DocumentRef(ref=f"{provider_id}/license.pdf")},
        {"license": OCRResult(success=success, overall_score=score)},
    )


def test_submit_moves_provider_to_pending():
    machine, dispatcher = _machine()

    request = machine.submit("provider-1", _request())

    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.PENDING
    assert state.is_public is False
    assert state.version == 1
    assert machine.latest_request("provider-1").id == request.id
    assert [event.event_type for event in dispatcher.sent] == ["submission_created"]


def test_second_submission_while_pending_conflicts():
    machine, _ = _machine()
    first = machine.submit("provider-1", _request())

    with pytest.raises(ConcurrentSubmissionConflict) as excinfo:
        machine.submit("provider-1", _request())

    assert excinfo.value.pending_request_id == first.id
    assert "already in progress" in str(excinfo.value)


def test_concurrent_submissions_leave_one_pending_request():
    machine, _ = _machine()
    outcomes = []
    barrier = threading.Barrier(4)

    def submit():
        barrier.wait()
        try:
            machine.submit("provider-1", _request())
            outcomes.append("ok")
        except ConcurrentSubmissionConflict:
            outcomes.append("conflict")

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
    with machine.store.engine.connect() as conn:
        pending = machine.store.list_requests(conn, provider_id="provider-1")
    assert len(pending) == 1


def test_approve_captures_snapshot_and_publishes():
    machine, dispatcher = _machine()
    with machine.store.transaction() as conn:
        machine.store.upsert_profile_fields(
            conn, "provider-1", {"phone": "0550000000", "description": "Cabinet"}
        )
    request = machine.submit("provider-1", _request())

    decided = machine.decide(request.id, "approved", "Documents OK")

    assert decided.status == RequestStatus.APPROVED
    assert decided.review_notes == "Documents OK"
    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.APPROVED
    assert state.is_public is True
    assert state.last_approved_snapshot == {"phone": "0550000000"}
    assert dispatcher.sent[-1].event_type == "decision_made"


def test_deciding_an_approved_request_again_fails():
    machine, _ = _machine()
    request = machine.submit("provider-1", _request())
    machine.decide(request.id, "approved")

    with pytest.raises(InvalidStateTransition):
        machine.decide(request.id, "approved")
    with pytest.raises(InvalidStateTransition):
        machine.decide(request.id, "rejected", "too late")


def test_reject_then_resubmit():
    machine, _ = _machine()
    first = machine.submit("provider-1", _request(success=False, score=40.0))

    machine.decide(first.id, RequestStatus.REJECTED, "Blurry licence")

    state = machine.get_state("provider-1")
    assert state.verification_status == VerificationStatus.REJECTED
    assert state.is_public is False
    assert state.last_approved_snapshot is None

    second = machine.submit("provider-1", _request())
    assert second.id != first.id
    assert machine.get_state("provider-1").verification_status == VerificationStatus.PENDING


def test_submit_while_approved_is_invalid():
    machine, _ = _machine()
    request = machine.submit("provider-1", _request())
    machine.decide(request.id, "approved")

    with pytest.raises(InvalidStateTransition):
        machine.submit("provider-1", _request())


def test_decide_unknown_request():
    machine, _ = _machine()

    with pytest.raises(RequestNotFound):
        machine.decide("missing", "approved")


def test_revoke_requires_approved_status():
    machine, _ = _machine()

    with pytest.raises(InvalidStateTransition):
        machine.revoke("provider-1", ["phone"])

    machine.submit("provider-1", _request())
    with pytest.raises(InvalidStateTransition):
        machine.revoke("provider-1", ["phone"])


def test_revoke_hides_provider_without_new_request():
    machine, _ = _machine()
    request = machine.submit("provider-1", _request())
    machine.decide(request.id, "approved")

    state = machine.revoke("provider-1", ["phone", "address"])

    assert state.verification_status == VerificationStatus.PENDING
    assert state.is_public is False
    assert state.last_approved_snapshot is None
    assert state.verification_revoked_at is not None
    assert "phone" in state.verification_revoked_reason
    latest = machine.latest_request("provider-1")
    assert latest.id == request.id
    assert latest.status == RequestStatus.APPROVED

    resubmitted = machine.submit("provider-1", _request())
    machine.decide(resubmitted.id, "approved")
    approved = machine.get_state("provider-1")
    assert approved.verification_revoked_at is None
    assert approved.verification_revoked_reason is None


def test_stale_version_write_is_rejected():
    machine, _ = _machine()
    machine.submit("provider-1", _request())
    state = machine.get_state("provider-1")

    with machine.store.transaction() as conn:
        machine.store.save_trust_state(conn, state, state.version)

    with pytest.raises(InvalidStateTransition):
        with machine.store.transaction() as conn:
            machine.store.save_trust_state(conn, state, state.version)


def test_provider_lock_is_reentrant_and_released_from_registry():
    with provider_lock("provider-lock-1"):
        with provider_lock("provider-lock-1"):
            assert "provider-lock-1" in state_machine._LOCKS

    gc.collect()

    assert "provider-lock-1" not in state_machine._LOCKS


def test_provider_lock_blocks_other_threads_while_held():
    entered = threading.Event()
    order = []

    def contender():
        entered.set()
        with provider_lock("provider-lock-2"):
            order.append("contender")

    with provider_lock("provider-lock-2"):
        thread = threading.Thread(target=contender)
        thread.start()
        entered.wait(timeout=5)
        thread.join(timeout=0.1)
        order.append("holder")
    thread.join(timeout=5)

    assert order == ["holder", "contender"]

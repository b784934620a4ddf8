from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy.engine import Connection

from provider_trust_engine.notifications.dispatcher import (
    LoggingDispatcher,
    NotificationDispatcher,
    decision_made_event,
    dispatch_safely,
    submission_created_event,
)
from provider_trust_engine.store.trust_store import TrustStore, utc_now
from provider_trust_engine.trust.errors import (
    ConcurrentSubmissionConflict,
    InvalidStateTransition,
    RequestNotFound,
)
from provider_trust_engine.trust.protected_fields import PROTECTED_FIELDS
from provider_trust_engine.trust.schemas import (
    ProviderTrustState,
    RequestStatus,
    VerificationRequest,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

# Entries live only while some caller holds or waits on the lock.
_LOCKS: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
_LOCKS_GUARD = threading.Lock()


@contextmanager
def provider_lock(provider_id: str) -> Iterator[None]:
    """Serialise trust-state work for one provider; other providers proceed freely."""
    with _LOCKS_GUARD:
        lock = _LOCKS.get(provider_id)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[provider_id] = lock
    with lock:
        yield


def _transition(state: ProviderTrustState, **changes: Any) -> ProviderTrustState:
    # Rebuilt through the constructor so the model invariants are re-checked.
    return ProviderTrustState(**{**state.model_dump(), **changes})


class TrustStateMachine:
    """Owns every write to ``ProviderTrustState``.

    States: none -> pending -> approved | rejected; approved -> pending only by
    revocation; rejected -> pending by resubmission.
    """

    def __init__(
        self,
        store: TrustStore,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or LoggingDispatcher()

    def get_state(self, provider_id: str) -> ProviderTrustState:
        with self.store.engine.connect() as conn:
            return self.store.get_trust_state(conn, provider_id)

    def latest_request(self, provider_id: str) -> Optional[VerificationRequest]:
        with self.store.engine.connect() as conn:
            return self.store.latest_request(conn, provider_id)

    def submit(self, provider_id: str, request: VerificationRequest) -> VerificationRequest:
        if request.provider_id != provider_id:
            raise ValueError(
                f"Request provider={request.provider_id} does not match provider={provider_id}"
            )
        with provider_lock(provider_id):
            with self.store.transaction() as conn:
                pending = self.store.find_pending_request(conn, provider_id)
                if pending is not None:
                    raise ConcurrentSubmissionConflict(provider_id, pending.id)
                state = self.store.get_trust_state(conn, provider_id)
                if state.verification_status == VerificationStatus.APPROVED:
                    raise InvalidStateTransition(
                        f"Provider={provider_id} is already approved",
                        current_status=state.verification_status.value,
                    )
                self.store.insert_request(conn, request)
                self.store.save_trust_state(
                    conn,
                    _transition(
                        state,
                        provider_name=request.provider_name,
                        verification_status=VerificationStatus.PENDING,
                        is_public=False,
                        last_approved_snapshot=None,
                    ),
                    state.version,
                )
        logger.info(
            "Verification submitted provider_id=%s request_id=%s pre_verified=%s",
            provider_id,
            request.id,
            request.pre_verified,
        )
        documents = request.documents
        document_count = int(documents.license is not None) + int(documents.id_document is not None)
        dispatch_safely(
            self.dispatcher,
            submission_created_event(
                provider_id,
                request.provider_name,
                request.id,
                document_count,
                request.pre_verified,
            ),
        )
        return request

    def decide(
        self,
        request_id: str,
        outcome: RequestStatus | str,
        notes: Optional[str] = None,
    ) -> VerificationRequest:
        outcome = RequestStatus(outcome)
        if outcome == RequestStatus.PENDING:
            raise ValueError("Decision outcome must be 'approved' or 'rejected'")
        with self.store.engine.connect() as conn:
            request = self.store.get_request(conn, request_id)
        if request is None:
            raise RequestNotFound(request_id)
        provider_id = request.provider_id

        with provider_lock(provider_id):
            with self.store.transaction() as conn:
                request = self.store.get_request(conn, request_id)
                if request is None:
                    raise RequestNotFound(request_id)
                if request.status != RequestStatus.PENDING:
                    raise InvalidStateTransition(
                        f"Request {request_id} is already {request.status.value}",
                        current_status=request.status.value,
                    )
                reviewed_at = utc_now()
                if not self.store.mark_request_decided(conn, request_id, outcome, notes, reviewed_at):
                    raise InvalidStateTransition(
                        f"Request {request_id} was decided concurrently"
                    )
                state = self.store.get_trust_state(conn, provider_id)
                if outcome == RequestStatus.APPROVED:
                    snapshot = self.store.get_profile_fields(conn, provider_id, PROTECTED_FIELDS)
                    new_state = _transition(
                        state,
                        provider_name=state.provider_name or request.provider_name,
                        verification_status=VerificationStatus.APPROVED,
                        is_public=True,
                        last_approved_snapshot=snapshot,
                        verification_revoked_at=None,
                        verification_revoked_reason=None,
                    )
                else:
                    new_state = _transition(
                        state,
                        provider_name=state.provider_name or request.provider_name,
                        verification_status=VerificationStatus.REJECTED,
                        is_public=False,
                        last_approved_snapshot=None,
                    )
                self.store.save_trust_state(conn, new_state, state.version)
        logger.info(
            "Verification decided provider_id=%s request_id=%s outcome=%s",
            provider_id,
            request_id,
            outcome.value,
        )
        dispatch_safely(
            self.dispatcher,
            decision_made_event(provider_id, request_id, outcome.value, notes),
        )
        return request.model_copy(
            update={"status": outcome, "review_notes": notes, "reviewed_at": reviewed_at}
        )

    def revoke(
        self,
        provider_id: str,
        modified_fields: Iterable[str],
        reason: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> ProviderTrustState:
        """Pull an approved provider back to ``pending`` and hide it.

        Pass ``conn`` to make the revocation part of the caller's transaction.
        """
        fields = list(modified_fields)
        with provider_lock(provider_id):
            if conn is not None:
                return self._revoke(conn, provider_id, fields, reason)
            with self.store.transaction() as own_conn:
                return self._revoke(own_conn, provider_id, fields, reason)

    def _revoke(
        self,
        conn: Connection,
        provider_id: str,
        modified_fields: list,
        reason: Optional[str],
    ) -> ProviderTrustState:
        state = self.store.get_trust_state(conn, provider_id)
        if state.verification_status != VerificationStatus.APPROVED:
            raise InvalidStateTransition(
                f"Only approved providers can be revoked, provider={provider_id}",
                current_status=state.verification_status.value,
            )
        new_state = _transition(
            state,
            verification_status=VerificationStatus.PENDING,
            is_public=False,
            last_approved_snapshot=None,
            verification_revoked_at=utc_now(),
            verification_revoked_reason=reason
            or f"Sensitive fields modified: {', '.join(modified_fields)}",
        )
        saved = self.store.save_trust_state(conn, new_state, state.version)
        logger.info(
            "Verification revoked provider_id=%s fields=%s", provider_id, modified_fields
        )
        return saved

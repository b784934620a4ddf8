from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from provider_trust_engine.notifications.dispatcher import (
    NotificationDispatcher,
    verification_revoked_event,
)
from provider_trust_engine.trust.change_detector import diff, validate_profile_update
from provider_trust_engine.trust.errors import RevocationNotificationFailure
from provider_trust_engine.trust.protected_fields import PROTECTED_FIELDS
from provider_trust_engine.trust.schemas import (
    ProfileUpdatePreview,
    ProfileUpdateResult,
    ProviderTrustState,
    VerificationStatus,
)
from provider_trust_engine.trust.state_machine import TrustStateMachine, provider_lock

logger = logging.getLogger(__name__)


def _modified_protected_fields(state: ProviderTrustState, update: Mapping[str, Any]) -> List[str]:
    if state.verification_status != VerificationStatus.APPROVED:
        return []
    return diff(update, state.last_approved_snapshot, PROTECTED_FIELDS)


class ProfileUpdateService:
    """Applies provider profile edits and revokes approval when protected fields change.

    The revocation and the profile write share one transaction: both land or
    neither does. The admin alert is sent only after commit and its failure
    never undoes the update.
    """

    def __init__(
        self,
        state_machine: TrustStateMachine,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.state_machine = state_machine
        self.store = state_machine.store
        self.dispatcher = dispatcher or state_machine.dispatcher

    def current_profile(self, provider_id: str) -> Dict[str, Any]:
        with self.store.engine.connect() as conn:
            return self.store.get_profile_fields(conn, provider_id)

    def preview(self, provider_id: str, update: Mapping[str, Any]) -> ProfileUpdatePreview:
        validate_profile_update(update)
        state = self.state_machine.get_state(provider_id)
        modified = _modified_protected_fields(state, update)
        return ProfileUpdatePreview(
            provider_id=provider_id,
            verification_status=state.verification_status,
            would_revoke=bool(modified),
            modified_sensitive_fields=modified,
        )

    def apply(self, provider_id: str, update: Mapping[str, Any]) -> ProfileUpdateResult:
        validate_profile_update(update)
        with provider_lock(provider_id):
            with self.store.transaction() as conn:
                state = self.store.get_trust_state(conn, provider_id)
                modified = _modified_protected_fields(state, update)
                if modified:
                    # Revocation is written before the profile fields.
                    state = self.state_machine.revoke(provider_id, modified, conn=conn)
                self.store.upsert_profile_fields(conn, provider_id, update)

        if modified:
            self._notify_revocation(provider_id, state.provider_name, modified)
        else:
            logger.info(
                "Profile updated provider_id=%s fields=%s", provider_id, list(update)
            )
        return ProfileUpdateResult(
            provider_id=provider_id,
            applied_fields=list(update),
            verification_revoked=bool(modified),
            modified_sensitive_fields=modified,
            verification_status=state.verification_status,
            is_public=state.is_public,
        )

    def _notify_revocation(
        self, provider_id: str, provider_name: Optional[str], modified: List[str]
    ) -> None:
        event = verification_revoked_event(provider_id, provider_name, modified)
        try:
            self.dispatcher.dispatch(event)
        except Exception as exc:
            failure = RevocationNotificationFailure(provider_id, modified)
            logger.error("%s", failure, exc_info=exc)

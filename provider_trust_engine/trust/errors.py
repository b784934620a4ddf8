from __future__ import annotations

from typing import Iterable, Optional


class TrustError(Exception):
    """Base class for provider trust pipeline errors."""


class ExtractionFailure(TrustError):
    """Text extraction could not run (corrupt file, unsupported format, timeout)."""


class InvalidStateTransition(TrustError):
    def __init__(self, message: str, current_status: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ConcurrentSubmissionConflict(TrustError):
    def __init__(self, provider_id: str, pending_request_id: Optional[str] = None) -> None:
        super().__init__(
            f"A verification review is already in progress for provider={provider_id}"
        )
        self.provider_id = provider_id
        self.pending_request_id = pending_request_id


class RevocationNotificationFailure(TrustError):
    """The admin alert for a committed revocation could not be delivered."""

    def __init__(self, provider_id: str, modified_fields: Iterable[str]) -> None:
        self.provider_id = provider_id
        self.modified_fields = list(modified_fields)
        super().__init__(
            f"Revocation notification failed for provider={provider_id} "
            f"fields={self.modified_fields}"
        )


class RequestNotFound(TrustError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Verification request '{request_id}' not found")
        self.request_id = request_id


class InvalidProfileUpdate(TrustError):
    def __init__(self, message: str, unknown_fields: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.unknown_fields = list(unknown_fields or [])

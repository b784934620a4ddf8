from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from provider_trust_engine.store.trust_store import utc_now
from provider_trust_engine.trust.config import get_trust_config
from provider_trust_engine.trust.protected_fields import describe_modified_fields
from provider_trust_engine.trust.schemas import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(self, event: NotificationEvent) -> None:
        ...


class LoggingDispatcher:
    """Default dispatcher: records events in the application log."""

    def __init__(self) -> None:
        self.sent: List[NotificationEvent] = []

    def dispatch(self, event: NotificationEvent) -> None:
        self.sent.append(event)
        logger.info(
            "Notification event_type=%s provider_id=%s details=%s",
            event.event_type,
            event.provider_id,
            event.details,
        )


class WebhookDispatcher:
    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0) -> None:
        url = url or os.getenv(get_trust_config().notification_webhook_env)
        if not url:
            raise ValueError("Notification webhook URL is required")
        self.url: str = url
        self.timeout_s = timeout_s

    def dispatch(self, event: NotificationEvent) -> None:
        with httpx.Client(timeout=self.timeout_s) as client:
            response = client.post(self.url, json=event.to_wire())
            response.raise_for_status()


def dispatch_safely(dispatcher: NotificationDispatcher, event: NotificationEvent) -> bool:
    """Deliver ``event``; delivery problems are logged, never raised."""
    try:
        dispatcher.dispatch(event)
    except Exception:
        logger.exception(
            "Notification delivery failed event_type=%s provider_id=%s",
            event.event_type,
            event.provider_id,
        )
        return False
    return True


def submission_created_event(
    provider_id: str, provider_name: str, request_id: str, document_count: int, pre_verified: bool
) -> NotificationEvent:
    return NotificationEvent(
        provider_id=provider_id,
        event_type="submission_created",
        timestamp=utc_now(),
        details={
            "priority": "medium",
            "title": f"Documents submitted: {provider_name}",
            "message": f"{document_count} verification document(s) submitted for review.",
            "providerName": provider_name,
            "requestId": request_id,
            "documentCount": document_count,
            "preVerified": pre_verified,
        },
    )


def decision_made_event(
    provider_id: str, request_id: str, outcome: str, notes: Optional[str]
) -> NotificationEvent:
    return NotificationEvent(
        provider_id=provider_id,
        event_type="decision_made",
        timestamp=utc_now(),
        details={
            "priority": "medium",
            "requestId": request_id,
            "outcome": outcome,
            "notes": notes,
        },
    )


def verification_revoked_event(
    provider_id: str, provider_name: Optional[str], modified_fields: Iterable[str]
) -> NotificationEvent:
    fields = list(modified_fields)
    display_name = provider_name or provider_id
    details: Dict[str, Any] = {
        "priority": "high",
        "title": f"Verification revoked: {display_name}",
        "message": (
            f"The provider modified: {describe_modified_fields(fields)}. "
            "A new verification is required."
        ),
        "providerName": provider_name,
        "modifiedFields": fields,
    }
    return NotificationEvent(
        provider_id=provider_id,
        event_type="verification_revoked",
        timestamp=utc_now(),
        details=details,
    )


def build_dispatcher() -> NotificationDispatcher:
    url = os.getenv(get_trust_config().notification_webhook_env)
    if url:
        return WebhookDispatcher(url)
    return LoggingDispatcher()

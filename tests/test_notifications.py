import httpx

from provider_trust_engine.notifications import dispatcher as dispatcher_module
from provider_trust_engine.notifications.dispatcher import (
    LoggingDispatcher,
    WebhookDispatcher,
    build_dispatcher,
    dispatch_safely,
    verification_revoked_event,
)


def test_revoked_event_summarises_fields():
    event = verification_revoked_event(
        "provider-1", "Clinique El Azhar", ["name", "phone", "address", "city"]
    )

    assert event.event_type == "verification_revoked"
    assert event.details["priority"] == "high"
    assert event.details["title"] == "Verification revoked: Clinique El Azhar"
    assert "Facility name, Phone and 2 others" in event.details["message"]
    assert event.to_wire()["providerId"] == "provider-1"


def test_dispatch_safely_swallows_delivery_errors():
    class Broken:
        def dispatch(self, event):
            raise RuntimeError("down")

    event = verification_revoked_event("provider-1", None, ["phone"])

    assert dispatch_safely(Broken(), event) is False
    assert dispatch_safely(LoggingDispatcher(), event) is True


def test_webhook_dispatcher_posts_event_json(monkeypatch):
    received = []
    real_client = httpx.Client

    def handler(request):
        received.append(request)
        return httpx.Response(204)

    def fake_client(*args, **kwargs):
        return real_client(transport=httpx.MockTransport(handler))

    monkeypatch.setattr(dispatcher_module.httpx, "Client", fake_client)
    event = verification_revoked_event("provider-1", "Clinique", ["phone"])

    WebhookDispatcher("http://hooks.example.com/admin").dispatch(event)

    assert len(received) == 1
    assert received[0].url == "http://hooks.example.com/admin"
    assert b'"eventType":"verification_revoked"' in received[0].content.replace(b" ", b"")


def test_build_dispatcher_uses_webhook_when_configured(monkeypatch):
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URL", raising=False)
    assert isinstance(build_dispatcher(), LoggingDispatcher)

    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "http://hooks.example.com/admin")
    assert isinstance(build_dispatcher(), WebhookDispatcher)

"""Tests for the approval event bus and webhook sink."""

import hashlib
import hmac
import json

import httpx

from tradeguard.services.notifications import (
    ALL_EVENTS,
    ApprovalEvent,
    ApprovalEventBus,
    ApprovalEventType,
    WebhookSink,
)


def approved_event() -> ApprovalEvent:
    return ApprovalEvent(
        event_type=ApprovalEventType.APPROVAL_APPROVED,
        entity_type="purchase_order",
        entity_id="po-1",
        request_id="req-1",
        payload={"status": "approved"},
    )


class TestApprovalEventBus:

    def test_delivers_to_type_and_wildcard_subscribers(self):
        bus = ApprovalEventBus()
        typed, everything = [], []
        bus.subscribe(ApprovalEventType.APPROVAL_APPROVED, typed.append)
        bus.subscribe(ALL_EVENTS, everything.append)

        bus.publish(approved_event())
        bus.publish(ApprovalEvent(event_type=ApprovalEventType.GUARD_BLOCKED))

        assert len(typed) == 1
        assert [e.event_type for e in everything] == [
            ApprovalEventType.APPROVAL_APPROVED,
            ApprovalEventType.GUARD_BLOCKED,
        ]

    def test_failing_subscriber_does_not_stop_others(self, caplog):
        """A broken subscriber is logged and skipped."""
        bus = ApprovalEventBus()
        received = []

        def broken(event):
            raise RuntimeError("downstream unavailable")

        bus.subscribe(ApprovalEventType.APPROVAL_APPROVED, broken)
        bus.subscribe(ApprovalEventType.APPROVAL_APPROVED, received.append)

        bus.publish(approved_event())

        assert len(received) == 1
        assert "Event subscriber failed" in caplog.text

    def test_unsubscribe(self):
        bus = ApprovalEventBus()
        received = []
        bus.subscribe("approval.approved", received.append)
        bus.unsubscribe(ApprovalEventType.APPROVAL_APPROVED, received.append)
        bus.publish(approved_event())
        assert received == []

    def test_event_to_dict(self):
        data = approved_event().to_dict()
        assert data["event"] == "approval.approved"
        assert data["request_id"] == "req-1"
        assert data["data"] == {"status": "approved"}


class TestWebhookSink:

    def test_posts_signed_json(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = WebhookSink("https://hooks.example.com/approvals", secret="s3cret", client=client)

        assert sink.deliver(approved_event())

        request = captured[0]
        body = request.content.decode()
        assert json.loads(body)["entity_id"] == "po-1"
        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        assert request.headers["X-TradeGuard-Signature"] == f"sha256={expected}"

    def test_retries_then_gives_up(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(503)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = WebhookSink("https://hooks.example.com/approvals", max_retries=3, client=client)

        assert not sink.deliver(approved_event())
        assert len(attempts) == 3

    def test_payload_template(self):
        sink = WebhookSink(
            "https://hooks.example.com/approvals",
            payload_template='{"text": "{{ event }} for {{ entity_type }} {{ entity_id }}"}',
        )
        assert sink.build_payload(approved_event()) == {"text": "approval.approved for purchase_order po-1"}

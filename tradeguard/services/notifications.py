"""Approval event publication.

The engine does not deliver notifications itself. It publishes structured
events (approval resolved, escalated, guard bypassed, audit integrity
failure) to in-process subscribers, so the originating business module can
commit or unwind its protected operation, and optionally to a webhook.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from jinja2 import Template

from tradeguard.core.clock import utcnow
from tradeguard.core.config import get_settings

logger = logging.getLogger(__name__)


class ApprovalEventType(str, Enum):
    """Events published by the approval engine."""
    APPROVAL_CREATED = "approval.created"
    APPROVAL_APPROVED = "approval.approved"
    APPROVAL_REJECTED = "approval.rejected"
    APPROVAL_CANCELLED = "approval.cancelled"
    APPROVAL_ESCALATED = "approval.escalated"
    APPROVAL_CONSUMED = "approval.consumed"
    GUARD_BYPASS = "guard.bypass"
    GUARD_BLOCKED = "guard.blocked"
    AUDIT_INTEGRITY_FAILURE = "audit.integrity_failure"


@dataclass
class ApprovalEvent:
    """A structured event correlated by entity id."""
    event_type: ApprovalEventType
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    request_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "request_id": self.request_id,
            "timestamp": self.occurred_at.isoformat(),
            "data": self.payload,
        }


EventCallback = Callable[[ApprovalEvent], None]
ALL_EVENTS = "*"


class ApprovalEventBus:
    """
    In-process publish/subscribe hub.

    Subscribers are called synchronously after the transition has been
    committed. A failing subscriber is logged and does not affect other
    subscribers or the committed state.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = {}

    def subscribe(
        self,
        event_type: Union[ApprovalEventType, str],
        callback: EventCallback,
    ) -> None:
        key = event_type.value if isinstance(event_type, ApprovalEventType) else event_type
        self._subscribers.setdefault(key, []).append(callback)

    def unsubscribe(self, event_type: Union[ApprovalEventType, str], callback: EventCallback) -> None:
        key = event_type.value if isinstance(event_type, ApprovalEventType) else event_type
        callbacks = self._subscribers.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: ApprovalEvent) -> None:
        callbacks = [
            *self._subscribers.get(event.event_type.value, []),
            *self._subscribers.get(ALL_EVENTS, []),
        ]
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed for %s (entity %s:%s)",
                    event.event_type.value, event.entity_type, event.entity_id,
                )


class WebhookSink:
    """Posts events to an external HTTP endpoint as JSON."""

    def __init__(
        self,
        url: str,
        *,
        secret: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 3,
        payload_template: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.payload_template = payload_template
        self._client = client

    def __call__(self, event: ApprovalEvent) -> None:
        self.deliver(event)

    def build_payload(self, event: ApprovalEvent) -> Dict[str, Any]:
        payload = event.to_dict()
        if self.payload_template:
            try:
                return json.loads(Template(self.payload_template).render(**payload))
            except Exception as e:
                logger.warning(f"Failed to render webhook template: {e}")
        return payload

    def deliver(self, event: ApprovalEvent) -> bool:
        """Deliver an event, retrying transport errors. Returns True on success."""
        body = json.dumps(self.build_payload(event), default=str)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            digest = hmac.new(self.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
            headers["X-TradeGuard-Signature"] = f"sha256={digest}"

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = client.post(self.url, content=body, headers=headers)
                    response.raise_for_status()
                    return True
                except httpx.HTTPError as e:
                    logger.warning(
                        "Webhook delivery of %s failed (attempt %d/%d): %s",
                        event.event_type.value, attempt, self.max_retries, e,
                    )
            logger.error("Giving up webhook delivery of %s to %s", event.event_type.value, self.url)
            return False
        finally:
            if self._client is None:
                client.close()


@lru_cache
def get_event_bus() -> ApprovalEventBus:
    """Process-wide event bus, with the configured webhook attached."""
    settings = get_settings()
    bus = ApprovalEventBus()
    if settings.webhook_url:
        bus.subscribe(
            ALL_EVENTS,
            WebhookSink(
                settings.webhook_url,
                secret=settings.webhook_secret,
                timeout=settings.webhook_timeout,
                max_retries=settings.webhook_max_retries,
            ),
        )
    return bus

"""Services for TradeGuard."""

from tradeguard.services.notifications import (
    ApprovalEvent,
    ApprovalEventBus,
    ApprovalEventType,
    WebhookSink,
    get_event_bus,
)

__all__ = [
    "ApprovalEvent",
    "ApprovalEventBus",
    "ApprovalEventType",
    "WebhookSink",
    "get_event_bus",
]

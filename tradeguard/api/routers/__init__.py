"""API routers for TradeGuard."""

from . import approvals
from . import chains
from . import guards
from . import audit

__all__ = [
    "approvals",
    "chains",
    "guards",
    "audit",
]

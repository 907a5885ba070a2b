"""Approval workflow engine."""

from .chains import ChainCoverage, ChainRegistry, Criticality, OperationCoverage, criticality_levels
from .conditions import parse_condition, evaluate_condition
from .context import ApprovalContext, OperationType
from .guard import ApprovalGuardService, GuardDecision, GuardEvaluation, GuardReason
from .machine import ApprovalStateMachine
from .scheduler import ApprovalScheduler, SweepResult
from .service import ApprovalService, BlockingReason, ExecutionRequest, ExecutionValidation
from .states import ApprovalStatus, ApprovalTransition, TERMINAL_STATES, OPEN_STATES

__all__ = [
    "ApprovalContext",
    "ApprovalGuardService",
    "ApprovalScheduler",
    "ApprovalService",
    "ApprovalStateMachine",
    "ApprovalStatus",
    "ApprovalTransition",
    "BlockingReason",
    "ChainCoverage",
    "ChainRegistry",
    "Criticality",
    "ExecutionRequest",
    "ExecutionValidation",
    "GuardDecision",
    "GuardEvaluation",
    "GuardReason",
    "OPEN_STATES",
    "OperationCoverage",
    "OperationType",
    "SweepResult",
    "TERMINAL_STATES",
    "criticality_levels",
    "evaluate_condition",
    "parse_condition",
]

from .engine import IsolationRunner
from .types import ExecutionOutcome, ExecutionRequest, OutcomeKind, StepResult

__all__ = [
    "ExecutionOutcome",
    "ExecutionRequest",
    "IsolationRunner",
    "OutcomeKind",
    "StepResult",
]

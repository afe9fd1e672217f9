"""TaskRelay data models."""

from taskrelay.models.connection import ConnectionState, ConnectionStatus
from taskrelay.models.execution import (
    ActionCommand,
    Execution,
    ExecutionEvent,
    ExecutionEventKind,
    ExecutionOutcome,
    ExecutionResult,
    StepReport,
    StepStatus,
    SurfaceResult,
)
from taskrelay.models.messages import (
    ExecuteRequest,
    ExecutionStatus,
    InboundKind,
    OutboundKind,
)
from taskrelay.models.plan import (
    LOCAL_ACTIONS,
    ActionKind,
    Plan,
    PlanStep,
    SafetyCheck,
    SafetyResult,
    ValidationResult,
)
from taskrelay.models.rules import (
    CriteriaType,
    Observation,
    RuleCriteria,
    RuleMatchState,
    TriggerRule,
)

__all__ = [
    "LOCAL_ACTIONS",
    "ActionCommand",
    "ActionKind",
    "ConnectionState",
    "ConnectionStatus",
    "CriteriaType",
    "ExecuteRequest",
    "Execution",
    "ExecutionEvent",
    "ExecutionEventKind",
    "ExecutionOutcome",
    "ExecutionResult",
    "ExecutionStatus",
    "InboundKind",
    "Observation",
    "OutboundKind",
    "Plan",
    "PlanStep",
    "RuleCriteria",
    "RuleMatchState",
    "SafetyCheck",
    "SafetyResult",
    "StepReport",
    "StepStatus",
    "SurfaceResult",
    "TriggerRule",
    "ValidationResult",
]

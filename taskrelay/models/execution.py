"""Execution — the single active step run and its outcome."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from taskrelay.models.plan import PlanStep


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    KILLED = "killed"
    ABORTED = "aborted"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionCommand(BaseModel):
    """Serializable description of one action for the action runner.

    Carries everything the runner needs; nothing is shared with the executor.
    """

    transaction_id: str
    step_index: int
    action: str
    params: dict
    surface: Optional[str] = None           # Opaque handle to the current surface


class SurfaceResult(BaseModel):
    """What the action runner reports back for one command."""

    success: bool = True
    error: Optional[str] = None
    surface: Optional[str] = None
    surface_updated: bool = False           # True when `surface` replaces the current handle
    detail: dict = {}


class StepReport(BaseModel):
    index: int
    action: str
    status: StepStatus
    error: Optional[str] = None
    duration_seconds: float = 0.0


class Execution(BaseModel):
    """The one in-flight execution. Cleared on completion or kill."""

    transaction_id: str
    steps: List[PlanStep]
    current_step_index: int = 0
    started_at: datetime


class ExecutionEventKind(str, Enum):
    STEP_STARTED = "step_started"
    STEP_FINISHED = "step_finished"


class ExecutionEvent(BaseModel):
    """Progress notification emitted by the step executor."""

    kind: ExecutionEventKind
    transaction_id: str
    index: int
    total: int
    action: str
    params: dict = {}
    report: Optional[StepReport] = None


class ExecutionResult(BaseModel):
    """Terminal outcome of one run."""

    transaction_id: str
    outcome: ExecutionOutcome
    total_steps: int
    steps_attempted: int
    steps_failed: int = 0
    reports: List[StepReport] = []
    error: Optional[str] = None             # Set only when the run was aborted
    executed_at: datetime
    execution_duration_seconds: float = 0.0

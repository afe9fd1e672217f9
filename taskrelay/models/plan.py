"""Plan — an ordered, bounded sequence of steps derived from a request."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class ActionKind(str, Enum):
    """Actions the local step executor knows how to dispatch."""
    OPEN_URL = "open_url"
    CLICK_ELEMENT = "click_element"
    TYPE_INTO = "type_into"
    PRESS_KEY = "press_key"
    WAIT = "wait"
    SCROLL_TO = "scroll_to"
    SELECT_OPTION = "select_option"
    READ_TEXT = "read_text"
    GO_BACK = "go_back"
    GO_FORWARD = "go_forward"
    REFRESH = "refresh"
    CLOSE_TAB = "close_tab"


LOCAL_ACTIONS = frozenset(kind.value for kind in ActionKind)


class SafetyCheck(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    BLOCKED = "blocked"


class PlanStep(BaseModel):
    """A single declarative step. `action` is kept as a string so that
    remote-only actions can travel through the same model."""

    action: str
    params: dict
    safety_check: SafetyCheck = SafetyCheck.PENDING


class Plan(BaseModel):
    transaction_id: str
    steps: List[PlanStep]


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []
    plan: Optional[Plan] = None


class SafetyResult(BaseModel):
    safe: bool
    violations: List[str] = []
    plan: Plan

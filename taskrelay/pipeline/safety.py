"""
Safety Filter — denylist screen run after validation, before execution.

Behavioral Contract:
- Scans each step's serialized params for destructive-intent keywords
  (case-insensitive substring match, incidental substrings included)
- A step with any hit is marked BLOCKED and contributes one violation
- Every other step is marked PASSED
- One blocked step makes the whole plan unsafe; nothing from it is executed
- Never modifies its own keyword list
"""

import json
import re
from typing import List, Sequence

from taskrelay.config import DEFAULT_DESTRUCTIVE_KEYWORDS
from taskrelay.models.plan import Plan, PlanStep, SafetyCheck, SafetyResult

_EMAIL = re.compile(r"[\w.%+-]+@[\w.-]+\.[a-zA-Z]{2,}")
_PHONE = re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b")
_CARD = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")
_PASSWORD = re.compile(r'"password"\s*:\s*"[^"]*"', re.IGNORECASE)


def mask_pii(text: str) -> str:
    """Mask e-mail, phone, card numbers and JSON passwords for logging."""
    if not text or not isinstance(text, str):
        return text
    masked = _EMAIL.sub("[EMAIL_MASKED]", text)
    # Cards before phones: a 16-digit run contains phone-shaped substrings
    masked = _CARD.sub("[CC_MASKED]", masked)
    masked = _PHONE.sub("[PHONE_MASKED]", masked)
    masked = _PASSWORD.sub('"password": "[MASKED]"', masked)
    return masked


def _serialize_params(step: PlanStep) -> str:
    return json.dumps(step.params or {}, separators=(",", ":"), default=str).lower()


def _keyword_hits(step: PlanStep, keywords: Sequence[str]) -> List[str]:
    serialized = _serialize_params(step)
    return [k for k in keywords if k in serialized]


class SafetyFilter:
    """Marks steps passed/blocked against a fixed destructive-keyword list."""

    def __init__(self, keywords: Sequence[str] = DEFAULT_DESTRUCTIVE_KEYWORDS):
        self._keywords = tuple(k.lower() for k in keywords if k)

    @property
    def keywords(self) -> tuple:
        return self._keywords

    def apply(self, plan: Plan) -> SafetyResult:
        violations: List[str] = []
        checked: List[PlanStep] = []

        for i, step in enumerate(plan.steps, start=1):
            hits = _keyword_hits(step, self._keywords)
            if hits:
                quoted = ", ".join(f'"{k}"' for k in hits)
                violations.append(
                    f"Step {i}: contains destructive keyword {quoted} (BLOCKED)"
                )
                checked.append(step.model_copy(update={"safety_check": SafetyCheck.BLOCKED}))
            else:
                checked.append(step.model_copy(update={"safety_check": SafetyCheck.PASSED}))

        return SafetyResult(
            safe=not violations,
            violations=violations,
            plan=plan.model_copy(update={"steps": checked}),
        )

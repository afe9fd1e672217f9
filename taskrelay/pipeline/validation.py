"""
Plan Validation — schema gate for untrusted generated plans.

Behavioral Contract:
- `steps` and `actions` are accepted as the same key
- A missing transaction id is synthesized
- Zero steps or more than the maximum rejects the whole plan
- Every step is checked before failing; all errors are returned together
- No partial success: an invalid plan yields no Plan object
"""

from typing import Iterable, List, Optional
from uuid import uuid4

from taskrelay.models.plan import LOCAL_ACTIONS, Plan, PlanStep, ValidationResult


class PlanValidator:
    """Validates raw plan mappings against the step schema."""

    def __init__(
        self,
        max_steps: int = 10,
        extra_actions: Optional[Iterable[str]] = None,
    ):
        self.max_steps = max_steps
        self.allowed_actions = frozenset(LOCAL_ACTIONS) | frozenset(extra_actions or ())

    def validate(self, raw: object) -> ValidationResult:
        if not isinstance(raw, dict):
            return ValidationResult(valid=False, errors=["Plan is not a valid object"])

        steps = raw.get("steps")
        if steps is None:
            steps = raw.get("actions")
        if not isinstance(steps, list):
            return ValidationResult(
                valid=False, errors=['Plan must contain a "steps" array']
            )

        transaction_id = raw.get("transaction_id") or raw.get("transactionId")
        if not transaction_id:
            transaction_id = str(uuid4())

        if len(steps) > self.max_steps:
            return ValidationResult(
                valid=False,
                errors=[
                    f"Plan has {len(steps)} steps, maximum allowed is {self.max_steps}"
                ],
            )
        if not steps:
            return ValidationResult(valid=False, errors=["Plan has no steps"])

        errors: List[str] = []
        for i, step in enumerate(steps, start=1):
            errors.extend(self._check_step(i, step))

        if errors:
            return ValidationResult(valid=False, errors=errors)

        plan = Plan(
            transaction_id=str(transaction_id),
            steps=[
                PlanStep(action=step["action"], params=step["params"])
                for step in steps
            ],
        )
        return ValidationResult(valid=True, errors=[], plan=plan)

    def _check_step(self, number: int, step: object) -> List[str]:
        if not isinstance(step, dict):
            return [f"Step {number}: not an object"]

        action = step.get("action")
        if not action:
            return [f'Step {number}: missing "action" field']

        errors = []
        if not isinstance(action, str) or action not in self.allowed_actions:
            errors.append(f'Step {number}: unknown action "{action}"')
        if not isinstance(step.get("params"), dict):
            errors.append(f'Step {number}: missing or invalid "params" object')
        return errors

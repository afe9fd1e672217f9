"""Split a safe plan between the local executor and the remote controller."""

from typing import Iterable, List, Tuple

from taskrelay.models.plan import LOCAL_ACTIONS, PlanStep


def partition_steps(
    steps: Iterable[PlanStep],
    local_actions: Iterable[str] = LOCAL_ACTIONS,
) -> Tuple[List[PlanStep], List[PlanStep]]:
    """Return (local, remote); relative order is kept within each side."""
    local_set = frozenset(local_actions)
    local: List[PlanStep] = []
    remote: List[PlanStep] = []
    for step in steps:
        (local if step.action in local_set else remote).append(step)
    return local, remote

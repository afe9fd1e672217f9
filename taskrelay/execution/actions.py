"""
Action runner boundary.

The step executor never touches the interactive surface itself. Each step
becomes an `ActionCommand`, a self-contained serializable record, and a
runner on the other side of the boundary interprets it and answers with a
`SurfaceResult`. Runners must not rely on state shared with the executor.
"""

from typing import List, Optional, Protocol, Set

from taskrelay.models.execution import ActionCommand, SurfaceResult
from taskrelay.models.plan import ActionKind


class ActionRunner(Protocol):
    """Protocol for action interpretation — pluggable backend."""

    async def run(self, command: ActionCommand) -> SurfaceResult: ...


class SimulatedActionRunner:
    """
    Records commands and answers from a scripted model of the surface.
    In production this is replaced by a runner that drives a real page.
    """

    def __init__(
        self,
        fail_actions: Optional[Set[str]] = None,
        raise_actions: Optional[Set[str]] = None,
        enter_pressed: bool = False,
    ):
        self.fail_actions = set(fail_actions or ())
        self.raise_actions = set(raise_actions or ())
        self.enter_pressed = enter_pressed
        self.commands: List[ActionCommand] = []
        self._surface_counter = 0

    async def run(self, command: ActionCommand) -> SurfaceResult:
        self.commands.append(command)

        if command.action in self.raise_actions:
            raise RuntimeError(f"Simulated crash in {command.action}")
        if command.action in self.fail_actions:
            return SurfaceResult(
                success=False, error=f"Simulated failure in {command.action}"
            )

        if command.action == ActionKind.OPEN_URL.value:
            self._surface_counter += 1
            return SurfaceResult(
                surface=f"surface-{self._surface_counter}",
                surface_updated=True,
                detail={"url": command.params.get("url")},
            )
        if command.action == ActionKind.CLOSE_TAB.value:
            return SurfaceResult(surface=None, surface_updated=True)
        if command.action == ActionKind.TYPE_INTO.value:
            pressed = bool(command.params.get("pressEnter")) or self.enter_pressed
            return SurfaceResult(detail={"enter_pressed": pressed})
        if command.action == ActionKind.READ_TEXT.value:
            return SurfaceResult(detail={"text": ""})
        return SurfaceResult()

"""
Step Executor — runs a validated, safety-checked list of steps.

Receives local steps and dispatches each one to an action runner.
Reports per-step progress and one terminal result.

Behavioral Contract:
- Exactly one Execution may be active; re-entry raises ExecutionBusyError
- The sticky kill switch is checked before every step, never mid-step
- A failing step is reported and the run continues with the next step
- Each successful step is followed by a bounded, action-specific settle delay
- Holds no knowledge of the surface; action semantics live in the runner
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from taskrelay.execution.actions import ActionRunner
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
from taskrelay.models.plan import ActionKind, PlanStep

logger = logging.getLogger(__name__)

Reporter = Callable[[ExecutionEvent], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]


class ExecutionBusyError(Exception):
    """Raised when a run is requested while another Execution is active."""
    pass


class StepParameterError(Exception):
    """Raised when a step lacks a parameter its action requires."""
    pass


class KillSwitch:
    """Sticky halt flag. Stays set until explicitly reset."""

    def __init__(self):
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def activate(self) -> None:
        self._active = True

    def reset(self) -> None:
        self._active = False


# --- Parameter normalization per action ---

def _require(params: dict, *names: str) -> None:
    missing = [n for n in names if params.get(n) in (None, "")]
    if missing:
        raise StepParameterError(f"Missing {', '.join(missing)} param")


def _prepare_open_url(params: dict) -> dict:
    _require(params, "url")
    return {"url": params["url"]}


def _prepare_click(params: dict) -> dict:
    _require(params, "target")
    return {
        "target": params["target"],
        "type": params.get("type") or "text",
        "index": int(params.get("index") or 0),
    }


def _prepare_type(params: dict) -> dict:
    _require(params, "target")
    return {
        "target": params["target"],
        "text": str(params.get("text", "")),
        "type": params.get("type") or "label",
        "pressEnter": bool(params.get("pressEnter", False)),
    }


def _prepare_press_key(params: dict) -> dict:
    return {
        "key": params.get("key") or "Enter",
        "target": params.get("target"),
        "type": params.get("type") or "label",
    }


def _prepare_wait(params: dict) -> dict:
    return {"ms": float(params.get("ms") or 1000)}


def _prepare_scroll(params: dict) -> dict:
    _require(params, "target")
    return {"target": params["target"], "type": params.get("type") or "text"}


def _prepare_select(params: dict) -> dict:
    _require(params, "target", "value")
    return {"target": params["target"], "value": params["value"]}


def _passthrough(params: dict) -> dict:
    return dict(params)


_HANDLERS: Dict[ActionKind, Callable[[dict], dict]] = {
    ActionKind.OPEN_URL: _prepare_open_url,
    ActionKind.CLICK_ELEMENT: _prepare_click,
    ActionKind.TYPE_INTO: _prepare_type,
    ActionKind.PRESS_KEY: _prepare_press_key,
    ActionKind.WAIT: _prepare_wait,
    ActionKind.SCROLL_TO: _prepare_scroll,
    ActionKind.SELECT_OPTION: _prepare_select,
    ActionKind.READ_TEXT: _passthrough,
    ActionKind.GO_BACK: _passthrough,
    ActionKind.GO_FORWARD: _passthrough,
    ActionKind.REFRESH: _passthrough,
    ActionKind.CLOSE_TAB: _passthrough,
}

# Seconds to let asynchronous side effects land before the next step
_SETTLE_SECONDS: Dict[ActionKind, float] = {
    ActionKind.OPEN_URL: 1.5,
    ActionKind.CLICK_ELEMENT: 2.5,
    ActionKind.PRESS_KEY: 1.5,
    ActionKind.SCROLL_TO: 0.5,
    ActionKind.SELECT_OPTION: 3.0,
    ActionKind.GO_BACK: 1.5,
    ActionKind.GO_FORWARD: 1.5,
}


def settle_delay(kind: ActionKind, params: dict, result: SurfaceResult) -> float:
    """Uncapped settle delay for a completed step."""
    if kind == ActionKind.WAIT:
        return max(params.get("ms", 0.0), 0.0) / 1000.0
    if kind == ActionKind.TYPE_INTO:
        return 2.0 if result.detail.get("enter_pressed") else 0.5
    return _SETTLE_SECONDS.get(kind, 0.0)


class StepExecutor:
    """
    Runs one Execution at a time against a pluggable action runner.

    States per run:
      RUNNING → (COMPLETED | KILLED | ABORTED)
    """

    def __init__(
        self,
        kill_switch: Optional[KillSwitch] = None,
        max_settle_seconds: float = 10.0,
        reporter: Optional[Reporter] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.kill_switch = kill_switch or KillSwitch()
        self.max_settle_seconds = max_settle_seconds
        self.reporter = reporter
        self._sleep = sleep or asyncio.sleep
        self._active: Optional[Execution] = None

    @property
    def active(self) -> Optional[Execution]:
        """The in-flight Execution, if any."""
        return self._active

    def kill(self) -> None:
        """Halt the current run (and any future one) at the next step boundary."""
        self.kill_switch.activate()

    async def run(
        self,
        transaction_id: str,
        steps: Sequence[PlanStep],
        runner: ActionRunner,
    ) -> ExecutionResult:
        if self._active is not None:
            raise ExecutionBusyError(
                f"Execution {self._active.transaction_id} is still running"
            )

        self._active = Execution(
            transaction_id=transaction_id,
            steps=list(steps),
            started_at=datetime.utcnow(),
        )
        start_time = time.monotonic()
        total = len(steps)
        reports: List[StepReport] = []
        surface: Optional[str] = None

        def finish(outcome: ExecutionOutcome, attempted: int, error: Optional[str] = None):
            return ExecutionResult(
                transaction_id=transaction_id,
                outcome=outcome,
                total_steps=total,
                steps_attempted=attempted,
                steps_failed=sum(1 for r in reports if r.status == StepStatus.FAILED),
                reports=reports,
                error=error,
                executed_at=datetime.utcnow(),
                execution_duration_seconds=round(time.monotonic() - start_time, 3),
            )

        try:
            for i, step in enumerate(steps):
                if self.kill_switch.active:
                    logger.info(
                        "Execution %s halted by kill switch at step %d/%d",
                        transaction_id, i + 1, total,
                    )
                    return finish(ExecutionOutcome.KILLED, attempted=i)

                self._active.current_step_index = i
                await self._report(ExecutionEvent(
                    kind=ExecutionEventKind.STEP_STARTED,
                    transaction_id=transaction_id,
                    index=i,
                    total=total,
                    action=step.action,
                    params=step.params,
                ))

                report, surface = await self._run_step(
                    transaction_id, i, step, runner, surface
                )
                reports.append(report)

                await self._report(ExecutionEvent(
                    kind=ExecutionEventKind.STEP_FINISHED,
                    transaction_id=transaction_id,
                    index=i,
                    total=total,
                    action=step.action,
                    report=report,
                ))

            return finish(ExecutionOutcome.COMPLETED, attempted=total)
        except Exception as e:
            logger.exception("Execution %s aborted", transaction_id)
            return finish(ExecutionOutcome.ABORTED, attempted=len(reports), error=str(e))
        finally:
            self._active = None

    async def _run_step(
        self,
        transaction_id: str,
        index: int,
        step: PlanStep,
        runner: ActionRunner,
        surface: Optional[str],
    ) -> Tuple[StepReport, Optional[str]]:
        """Dispatch a single step. Step errors are contained here."""
        started = time.monotonic()

        def report(status: StepStatus, error: Optional[str] = None) -> StepReport:
            return StepReport(
                index=index,
                action=step.action,
                status=status,
                error=error,
                duration_seconds=round(time.monotonic() - started, 3),
            )

        try:
            kind = ActionKind(step.action)
        except ValueError:
            logger.warning("Unknown action %s at step %d, skipping", step.action, index + 1)
            return report(StepStatus.SKIPPED, f"Unsupported action: {step.action}"), surface

        try:
            params = _HANDLERS[kind](step.params or {})
            result = await runner.run(ActionCommand(
                transaction_id=transaction_id,
                step_index=index,
                action=kind.value,
                params=params,
                surface=surface,
            ))
            if result.surface_updated:
                surface = result.surface
            if not result.success:
                error = result.error or f"{kind.value} failed"
                logger.warning("Step %d (%s) failed: %s", index + 1, kind.value, error)
                return report(StepStatus.FAILED, error), surface

            delay = min(settle_delay(kind, params, result), self.max_settle_seconds)
            if delay > 0:
                await self._sleep(delay)
        except Exception as e:
            logger.warning("Step %d (%s) failed: %s", index + 1, kind.value, e)
            return report(StepStatus.FAILED, str(e)), surface

        return report(StepStatus.COMPLETED), surface

    async def _report(self, event: ExecutionEvent) -> None:
        if self.reporter is not None:
            await self.reporter(event)

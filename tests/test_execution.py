"""Tests for the Step Executor and the Transaction Ledger."""

import asyncio

import pytest

from taskrelay.execution.actions import SimulatedActionRunner
from taskrelay.execution.executor import (
    ExecutionBusyError,
    KillSwitch,
    StepExecutor,
    settle_delay,
)
from taskrelay.execution.ledger import TransactionLedger
from taskrelay.models.execution import (
    ExecutionEventKind,
    ExecutionOutcome,
    StepStatus,
    SurfaceResult,
)
from taskrelay.models.plan import ActionKind, PlanStep


class _SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _make_steps(*actions: str) -> list:
    params = {
        "open_url": {"url": "https://example.com"},
        "click_element": {"target": "Search"},
        "type_into": {"target": "Query", "text": "shoes"},
        "wait": {"ms": 200},
        "select_option": {"target": "Size", "value": "42"},
        "scroll_to": {"target": "Footer"},
    }
    return [PlanStep(action=a, params=dict(params.get(a, {}))) for a in actions]


class TestStepExecutor:
    async def test_runs_all_steps(self):
        runner = SimulatedActionRunner()
        executor = StepExecutor(sleep=_SleepRecorder())

        result = await executor.run("tx_1", _make_steps("open_url", "click_element"), runner)

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert result.total_steps == 2
        assert result.steps_attempted == 2
        assert result.steps_failed == 0
        assert [c.action for c in runner.commands] == ["open_url", "click_element"]
        assert executor.active is None

    async def test_continue_on_error(self):
        runner = SimulatedActionRunner(fail_actions={"click_element"})
        executor = StepExecutor(sleep=_SleepRecorder())

        result = await executor.run(
            "tx_1", _make_steps("open_url", "click_element", "wait"), runner
        )

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert result.steps_failed == 1
        assert [r.status for r in result.reports] == [
            StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.COMPLETED,
        ]
        assert len(runner.commands) == 3

    async def test_runner_exception_is_step_failure(self):
        runner = SimulatedActionRunner(raise_actions={"open_url"})
        executor = StepExecutor(sleep=_SleepRecorder())

        result = await executor.run("tx_1", _make_steps("open_url", "wait"), runner)

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert result.reports[0].status == StepStatus.FAILED
        assert "Simulated crash" in result.reports[0].error
        assert result.reports[1].status == StepStatus.COMPLETED

    async def test_missing_required_param_fails_step(self):
        runner = SimulatedActionRunner()
        executor = StepExecutor(sleep=_SleepRecorder())
        steps = [PlanStep(action="open_url", params={})]

        result = await executor.run("tx_1", steps, runner)

        assert result.reports[0].status == StepStatus.FAILED
        assert "url" in result.reports[0].error
        assert runner.commands == []

    async def test_unknown_action_skipped(self):
        runner = SimulatedActionRunner()
        executor = StepExecutor(sleep=_SleepRecorder())
        steps = [PlanStep(action="summarize_page", params={})] + _make_steps("wait")

        result = await executor.run("tx_1", steps, runner)

        assert result.reports[0].status == StepStatus.SKIPPED
        assert result.steps_failed == 0
        assert [c.action for c in runner.commands] == ["wait"]

    async def test_kill_switch_stops_before_next_step(self):
        kill_switch = KillSwitch()
        runner = SimulatedActionRunner()

        async def reporter(event):
            if event.kind == ExecutionEventKind.STEP_FINISHED and event.index == 1:
                kill_switch.activate()

        executor = StepExecutor(kill_switch=kill_switch, reporter=reporter, sleep=_SleepRecorder())
        result = await executor.run(
            "tx_1", _make_steps("open_url", "click_element", "wait", "scroll_to"), runner
        )

        assert result.outcome == ExecutionOutcome.KILLED
        assert result.steps_attempted == 2
        assert len(runner.commands) == 2
        assert executor.active is None

    async def test_kill_switch_already_active(self):
        executor = StepExecutor(sleep=_SleepRecorder())
        executor.kill()
        runner = SimulatedActionRunner()

        result = await executor.run("tx_1", _make_steps("open_url"), runner)

        assert result.outcome == ExecutionOutcome.KILLED
        assert result.steps_attempted == 0
        assert runner.commands == []
        # Sticky: a second run is also halted
        again = await executor.run("tx_2", _make_steps("open_url"), runner)
        assert again.outcome == ExecutionOutcome.KILLED

    async def test_busy_rejected(self):
        gate = asyncio.Event()

        async def slow_sleep(seconds):
            await gate.wait()

        executor = StepExecutor(sleep=slow_sleep)
        runner = SimulatedActionRunner()
        first = asyncio.create_task(executor.run("tx_1", _make_steps("open_url"), runner))
        await asyncio.sleep(0)
        assert executor.active is not None
        assert executor.active.transaction_id == "tx_1"

        with pytest.raises(ExecutionBusyError):
            await executor.run("tx_2", _make_steps("wait"), runner)

        gate.set()
        result = await first
        assert result.outcome == ExecutionOutcome.COMPLETED
        assert executor.active is None

    async def test_settle_delay_capped(self):
        sleep = _SleepRecorder()
        executor = StepExecutor(max_settle_seconds=10, sleep=sleep)
        steps = [PlanStep(action="wait", params={"ms": 60000})]

        await executor.run("tx_1", steps, SimulatedActionRunner())

        assert sleep.delays == [10]

    async def test_no_settle_after_failed_step(self):
        sleep = _SleepRecorder()
        executor = StepExecutor(sleep=sleep)
        runner = SimulatedActionRunner(fail_actions={"click_element"})

        await executor.run("tx_1", _make_steps("click_element"), runner)

        assert sleep.delays == []

    async def test_surface_handle_threaded_between_steps(self):
        runner = SimulatedActionRunner()
        executor = StepExecutor(sleep=_SleepRecorder())

        await executor.run("tx_1", _make_steps("open_url", "click_element"), runner)

        assert runner.commands[0].surface is None
        assert runner.commands[1].surface == "surface-1"

    async def test_reporter_failure_aborts(self):
        async def reporter(event):
            raise RuntimeError("listener gone")

        executor = StepExecutor(reporter=reporter, sleep=_SleepRecorder())
        result = await executor.run("tx_1", _make_steps("open_url"), SimulatedActionRunner())

        assert result.outcome == ExecutionOutcome.ABORTED
        assert result.error == "listener gone"
        assert executor.active is None

    async def test_progress_events(self):
        events = []

        async def reporter(event):
            events.append((event.kind, event.index, event.total))

        executor = StepExecutor(reporter=reporter, sleep=_SleepRecorder())
        await executor.run("tx_1", _make_steps("open_url", "wait"), SimulatedActionRunner())

        assert events == [
            (ExecutionEventKind.STEP_STARTED, 0, 2),
            (ExecutionEventKind.STEP_FINISHED, 0, 2),
            (ExecutionEventKind.STEP_STARTED, 1, 2),
            (ExecutionEventKind.STEP_FINISHED, 1, 2),
        ]


class TestSettleDelay:
    def test_wait_uses_ms(self):
        assert settle_delay(ActionKind.WAIT, {"ms": 1500}, SurfaceResult()) == 1.5

    def test_type_into_depends_on_enter(self):
        pressed = SurfaceResult(detail={"enter_pressed": True})
        assert settle_delay(ActionKind.TYPE_INTO, {}, pressed) == 2.0
        assert settle_delay(ActionKind.TYPE_INTO, {}, SurfaceResult()) == 0.5

    def test_fixed_delays(self):
        assert settle_delay(ActionKind.SELECT_OPTION, {}, SurfaceResult()) == 3.0
        assert settle_delay(ActionKind.READ_TEXT, {}, SurfaceResult()) == 0.0


class TestTransactionLedger:
    def test_duplicate_rejected(self):
        ledger = TransactionLedger()
        assert ledger.record("tx_1") is True
        assert ledger.record("tx_1") is False
        assert "tx_1" in ledger

    def test_evicts_oldest_beyond_capacity(self):
        ledger = TransactionLedger(capacity=50)
        for i in range(51):
            assert ledger.record(f"tx_{i}")

        assert len(ledger) == 50
        assert "tx_0" not in ledger
        assert "tx_50" in ledger
        # Evicted ids may be processed again
        assert ledger.record("tx_0") is True

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            TransactionLedger(capacity=0)

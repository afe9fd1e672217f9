"""
Orchestrator — the dispatch loop and the one context object that owns
all mutable relay state.

Routes inbound controller messages and local control requests to the
transport client, rule engine, plan pipeline and step executor, and fans
their outcomes out to the controller and to passive listeners.

Pipeline per execute request:
  KILL GATE → DEDUP → PLANNING → RESPONSE → EXTRACT → VALIDATE → SAFETY
  → PARTITION (remote batch forwarded) → EXECUTE → RESULT

Failure mapping:
  parse / validation / response-source errors → status "error"
  safety violations                           → status "blocked"
  kill switch during a run                    → status "killed"
None of them stop the dispatch loop.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from taskrelay.config import RelaySettings, get_settings
from taskrelay.dispatch.activity import ActivityLog
from taskrelay.dispatch.listeners import ListenerHub
from taskrelay.execution.actions import ActionRunner, SimulatedActionRunner
from taskrelay.execution.executor import (
    ExecutionBusyError,
    KillSwitch,
    Sleeper,
    StepExecutor,
)
from taskrelay.execution.ledger import TransactionLedger
from taskrelay.models.execution import (
    ExecutionEvent,
    ExecutionEventKind,
    ExecutionOutcome,
    ExecutionResult,
    StepStatus,
)
from taskrelay.models.messages import (
    ExecuteRequest,
    ExecutionStatus,
    InboundKind,
    execution_result,
    execution_status,
    kill_switch_ack,
    remote_actions,
    rule_triggered,
    url_trigger,
)
from taskrelay.models.plan import LOCAL_ACTIONS
from taskrelay.pipeline.extraction import extract_plan
from taskrelay.pipeline.prompts import build_planning_prompt
from taskrelay.pipeline.routing import partition_steps
from taskrelay.pipeline.safety import SafetyFilter
from taskrelay.pipeline.sources import ResponseSourceError, ResponseSourceRegistry
from taskrelay.pipeline.validation import PlanValidator
from taskrelay.rules.engine import RuleEngine
from taskrelay.rules.observation import UrlObserver
from taskrelay.store.settings_store import SettingsStore
from taskrelay.transport.client import (
    Connector,
    ControllerClient,
    TransportEvent,
    TransportEventKind,
)

logger = logging.getLogger(__name__)


class DispatchEventKind(str, Enum):
    TRANSPORT_CONNECTED = "transport_connected"
    TRANSPORT_DISCONNECTED = "transport_disconnected"
    CONTROLLER_MESSAGE = "controller_message"
    OBSERVATION = "observation"
    EXECUTE = "execute"
    REGISTER_RULES = "register_rules"
    KILL = "kill"
    RESET_KILL = "reset_kill"
    CONNECT = "connect"
    DISCONNECT = "disconnect"


class DispatchEvent:
    """One unit of work for the central handler."""

    def __init__(
        self,
        kind: DispatchEventKind,
        payload: Optional[dict] = None,
        error: Optional[str] = None,
    ):
        self.kind = kind
        self.payload = payload or {}
        self.error = error

    def __repr__(self) -> str:
        return f"DispatchEvent({self.kind.value}, payload={self.payload!r})"


_TRANSPORT_KINDS = {
    TransportEventKind.CONNECTED: DispatchEventKind.TRANSPORT_CONNECTED,
    TransportEventKind.DISCONNECTED: DispatchEventKind.TRANSPORT_DISCONNECTED,
    TransportEventKind.MESSAGE: DispatchEventKind.CONTROLLER_MESSAGE,
}


class Orchestrator:
    """
    Holds the kill switch, the active Execution (via the executor), the
    ledger, the rule engine and the controller link. Everything runs on
    one event loop; pipeline runs are tasks so that kill, rule and
    connection events are handled while a run is suspended.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        store: Optional[SettingsStore] = None,
        runner: Optional[ActionRunner] = None,
        sources: Optional[ResponseSourceRegistry] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[Sleeper] = None,
        reconnect_sleep: Optional[Sleeper] = None,
    ):
        self.settings = settings or get_settings()
        cfg = self.settings

        self.store = store or SettingsStore(cfg.db_path, retention=cfg.log_retention)
        self.listeners = ListenerHub()
        self.client = ControllerClient(
            emit=self._on_transport_event,
            url=cfg.controller_url,
            connector=connector,
            heartbeat_interval=cfg.heartbeat_interval_seconds,
            base_delay=cfg.reconnect_base_delay_seconds,
            max_delay=cfg.reconnect_max_delay_seconds,
            max_attempts=cfg.max_reconnect_attempts,
            sleep=reconnect_sleep,
        )
        self.activity = ActivityLog(self.store, self.listeners, self.client)

        self.rules = RuleEngine(cooldown_seconds=cfg.rule_cooldown_seconds)
        self.observer = UrlObserver()
        self.ledger = TransactionLedger(capacity=cfg.ledger_capacity)
        self.validator = PlanValidator(
            max_steps=cfg.max_plan_steps, extra_actions=cfg.remote_actions
        )
        self.safety = SafetyFilter(cfg.destructive_keywords)
        self.kill_switch = KillSwitch()
        self.executor = StepExecutor(
            kill_switch=self.kill_switch,
            max_settle_seconds=cfg.max_settle_seconds,
            reporter=self._on_execution_event,
            sleep=sleep,
        )
        self.runner = runner or SimulatedActionRunner()
        self.sources = sources or ResponseSourceRegistry()

        self._queue: "asyncio.Queue[DispatchEvent]" = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- Runtime settings (store first, then process settings) ---

    @property
    def controller_url(self) -> str:
        return self.store.get("controller_url") or self.settings.controller_url

    @property
    def response_target(self) -> str:
        return self.store.get("response_target") or self.settings.response_target

    async def update_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        self.store.update(values)
        await self.activity.add(f"Settings updated: {', '.join(sorted(values))}")
        return self.store.all()

    # --- Dispatch loop ---

    def post(self, event: DispatchEvent) -> None:
        """Queue an event for the dispatch loop (arrival order is kept)."""
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Drain the event queue forever."""
        while True:
            event = await self._queue.get()
            await self._handle_guarded(event)

    async def process_pending(self) -> int:
        """Handle every queued event now; returns how many were handled."""
        handled = 0
        while not self._queue.empty():
            await self._handle_guarded(self._queue.get_nowait())
            handled += 1
        return handled

    async def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run())
        if self.settings.auto_connect:
            await self.connect()

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        # Let cancelled runs unwind so the executor clears its active Execution
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.client.close()

    async def _handle_guarded(self, event: DispatchEvent) -> None:
        try:
            await self.handle(event)
        except Exception:
            logger.exception("Unhandled error while processing %r", event)

    async def handle(self, event: DispatchEvent) -> None:
        """The central handler: one branch per event kind."""
        kind = event.kind
        if kind == DispatchEventKind.TRANSPORT_CONNECTED:
            self.listeners.broadcast(
                {"type": "status", "status": "connected", "url": self.client.status.url}
            )
            await self.activity.add("Connected to controller")
        elif kind == DispatchEventKind.TRANSPORT_DISCONNECTED:
            self.listeners.broadcast({"type": "status", "status": "disconnected"})
            suffix = f": {event.error}" if event.error else ""
            await self.activity.add(f"Disconnected from controller{suffix}")
            if self.client.status.attempts >= self.client.max_attempts and not self.client.reconnect_pending:
                await self.activity.add("Max reconnect attempts reached. Connect manually to retry.")
        elif kind == DispatchEventKind.CONTROLLER_MESSAGE:
            await self._handle_controller_message(event.payload)
        elif kind == DispatchEventKind.OBSERVATION:
            await self.observe(event.payload.get("url", ""))
        elif kind == DispatchEventKind.EXECUTE:
            self.submit(ExecuteRequest.from_payload(event.payload))
        elif kind == DispatchEventKind.REGISTER_RULES:
            await self.register_rules(event.payload.get("rules"))
        elif kind == DispatchEventKind.KILL:
            await self.kill()
        elif kind == DispatchEventKind.RESET_KILL:
            await self.reset_kill()
        elif kind == DispatchEventKind.CONNECT:
            await self.connect()
        elif kind == DispatchEventKind.DISCONNECT:
            await self.client.disconnect()

    def _on_transport_event(self, event: TransportEvent) -> None:
        self.post(DispatchEvent(
            _TRANSPORT_KINDS[event.kind], payload=event.payload, error=event.error
        ))

    async def _handle_controller_message(self, data: dict) -> None:
        msg_type = data.get("type")
        payload = data.get("payload") or data
        try:
            kind = InboundKind(msg_type)
        except ValueError:
            await self.activity.add(f"Unknown controller message type: {msg_type}")
            return

        if kind == InboundKind.CONNECTION_ACK:
            await self.activity.add(f"Controller acknowledged: {data.get('agent') or 'unknown'}")
        elif kind == InboundKind.PONG:
            pass
        elif kind == InboundKind.EXECUTE_PROMPT:
            self.submit(ExecuteRequest.from_payload(payload))
        elif kind == InboundKind.REGISTER_TRIGGERS:
            await self.register_rules(payload.get("rules"))
        elif kind == InboundKind.KILL_SWITCH:
            await self.kill()
        elif kind == InboundKind.RESET_KILL_SWITCH:
            await self.reset_kill()

    # --- Connection control ---

    async def connect(self) -> None:
        self.listeners.broadcast(
            {"type": "status", "status": "connecting", "url": self.controller_url}
        )
        await self.client.connect(self.controller_url)

    async def disconnect(self) -> None:
        await self.client.disconnect()

    # --- Kill switch ---

    async def kill(self) -> None:
        self.executor.kill()
        await self.activity.add("KILL SWITCH ACTIVATED: all executions halted", logging.WARNING)
        self.listeners.broadcast({"type": "kill_switch", "active": True})
        await self.client.send(kill_switch_ack(True))

    async def reset_kill(self) -> None:
        self.kill_switch.reset()
        await self.activity.add("Kill switch reset")
        self.listeners.broadcast({"type": "kill_switch", "active": False})
        await self.client.send(kill_switch_ack(False))

    # --- Triggers ---

    async def register_rules(self, rules: Any) -> List[str]:
        try:
            accepted = self.rules.set_rules(rules)
        except ValueError:
            await self.activity.add("register_triggers: invalid or missing rules array")
            return []
        await self.activity.add(f"Registered {len(accepted)} trigger rule(s)")
        for rule in accepted:
            await self.activity.add(
                f"  Rule {rule.id}: {rule.criteria.type.value} = {rule.criteria.value}"
            )
        return [r.id for r in accepted]

    async def observe(self, url: str) -> List[str]:
        """Report a location change and fire any matching rules."""
        observation = self.observer.observe(url)
        if observation is None:
            return []

        await self.client.send(url_trigger(observation))
        self.listeners.broadcast({"type": "url_trigger", **observation.model_dump(mode="json")})
        await self.activity.add(f"URL trigger: {observation.domain} -> {observation.category}")

        fired = self.rules.evaluate(observation)
        ordered = [r.id for r in self.rules.rules if r.id in fired]
        for rule_id in ordered:
            await self.activity.add(f"Rule triggered: {rule_id}")
            await self.client.send(rule_triggered(rule_id))
        return ordered

    # --- Execution pipeline ---

    def submit(self, request: ExecuteRequest, recorded: bool = False) -> asyncio.Task:
        """
        Start a pipeline run without blocking the dispatch loop.

        `recorded` means the caller already claimed the transaction id in the
        ledger, so the run skips the dedup step.
        """
        task = asyncio.create_task(self._guarded_pipeline(request, recorded))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded_pipeline(
        self, request: ExecuteRequest, recorded: bool = False
    ) -> Optional[ExecutionResult]:
        try:
            return await self.run_pipeline(request, recorded)
        except Exception as e:
            logger.exception("Pipeline failed")
            await self._fail(request.transaction_id or "unknown", f"Pipeline failed: {e}")
            return None

    async def run_pipeline(
        self, request: ExecuteRequest, recorded: bool = False
    ) -> Optional[ExecutionResult]:
        if self.kill_switch.active:
            await self.activity.add("BLOCKED: kill switch is active. Reset before executing.")
            return None
        if not request.prompt:
            await self.activity.add("No prompt provided in execute request")
            return None

        tx_id = request.transaction_id or str(uuid4())
        if not recorded and not self.ledger.record(tx_id):
            await self.activity.add(f"Ignoring duplicate transaction: {tx_id}")
            return None

        await self.activity.add(f'Prompt received [{tx_id[:8]}]: "{request.prompt[:60]}"')
        self.listeners.broadcast(
            {"type": "execution_start", "transaction_id": tx_id, "prompt": request.prompt}
        )
        await self._status(
            tx_id, ExecutionStatus.PLANNING, "Requesting an execution plan..."
        )

        target = self.response_target
        prompt = build_planning_prompt(request.prompt, self.settings.max_plan_steps)
        try:
            source = self.sources.get(target)
            raw = await asyncio.wait_for(
                source.fetch(prompt, target),
                timeout=self.settings.response_timeout_seconds,
            )
        except ResponseSourceError as e:
            return await self._fail(tx_id, f"Response source {target} failed: {e}")
        except asyncio.TimeoutError:
            return await self._fail(tx_id, f"Timed out waiting for a response from {target}")

        await self.activity.add(f"Response received [{tx_id[:8]}]")
        self.listeners.broadcast({"type": "response_raw", "response": (raw or "")[:200]})

        parsed = extract_plan(raw)
        if parsed is None:
            return await self._fail(tx_id, "Failed to parse JSON from response")

        parsed["transaction_id"] = tx_id
        validation = self.validator.validate(parsed)
        if not validation.valid:
            return await self._fail(
                tx_id,
                f"Validation errors: {'; '.join(validation.errors)}",
                errors=validation.errors,
            )

        safety = self.safety.apply(validation.plan)
        if not safety.safe:
            message = f"Safety violations: {'; '.join(safety.violations)}"
            await self.activity.add(f"BLOCKED: {message}", logging.WARNING)
            await self._status(tx_id, ExecutionStatus.BLOCKED, message)
            self.listeners.broadcast(
                {"type": "execution_blocked", "violations": safety.violations}
            )
            return None

        plan = safety.plan
        await self.activity.add(f"Plan validated: {len(plan.steps)} steps")
        self.listeners.broadcast(
            {"type": "plan_validated", "plan": plan.model_dump(mode="json")}
        )

        local, remote = partition_steps(plan.steps, LOCAL_ACTIONS)
        if remote:
            await self.activity.add(f"Forwarding {len(remote)} remote step(s) to controller")
            await self.client.send(remote_actions(tx_id, remote))
        if not local:
            return None

        await self.activity.add(f"Executing {len(local)} local step(s)...")
        await self._status(
            tx_id, ExecutionStatus.EXECUTING, f"Executing {len(local)} actions..."
        )
        try:
            result = await self.executor.run(tx_id, local, self.runner)
        except ExecutionBusyError as e:
            return await self._fail(tx_id, str(e))

        await self._report_result(result)
        return result

    async def _report_result(self, result: ExecutionResult) -> None:
        tx_id = result.transaction_id
        if result.outcome == ExecutionOutcome.COMPLETED:
            if result.steps_failed:
                message = (
                    f"Executed {result.total_steps} steps "
                    f"({result.steps_failed} failed)"
                )
            else:
                message = f"All {result.total_steps} steps executed successfully"
            await self.activity.add(message)
            await self.client.send(execution_result(result, message))
            self.listeners.broadcast(
                {"type": "execution_complete", "transaction_id": tx_id}
            )
        elif result.outcome == ExecutionOutcome.KILLED:
            stop_index = result.steps_attempted
            message = f"Execution stopped at step {stop_index + 1}/{result.total_steps}"
            await self.activity.add(f"Execution halted by kill switch. {message}", logging.WARNING)
            await self._status(tx_id, ExecutionStatus.KILLED, message, step=stop_index)
            self.listeners.broadcast({"type": "execution_killed", "step": stop_index})
        else:
            await self._fail(tx_id, f"Execution aborted: {result.error}")

    async def _on_execution_event(self, event: ExecutionEvent) -> None:
        label = f"Step {event.index + 1}/{event.total}: {event.action}"
        if event.kind == ExecutionEventKind.STEP_STARTED:
            await self.activity.add(label)
            self.listeners.broadcast({
                "type": "step_executing",
                "step": event.index,
                "total": event.total,
                "action": event.action,
                "params": event.params,
            })
            await self._status(
                event.transaction_id,
                ExecutionStatus.STEP,
                label,
                step=event.index + 1,
                total=event.total,
                action=event.action,
            )
            return

        report = event.report
        if report is not None and report.status == StepStatus.FAILED:
            await self.activity.add(f"Step {event.index + 1} failed: {report.error}", logging.WARNING)
        elif report is not None and report.status == StepStatus.SKIPPED:
            await self.activity.add(f"Step {event.index + 1} skipped: {report.error}")
        self.listeners.broadcast({
            "type": "step_complete",
            "step": event.index,
            "success": report is not None and report.status == StepStatus.COMPLETED,
            "status": report.status.value if report else None,
            "error": report.error if report else None,
        })

    async def _status(
        self, tx_id: str, status: ExecutionStatus, message: str, **extra
    ) -> bool:
        return await self.client.send(execution_status(tx_id, status, message, **extra))

    async def _fail(self, tx_id: str, message: str, **extra) -> None:
        await self.activity.add(f"ERROR: {message}", logging.ERROR)
        await self._status(tx_id, ExecutionStatus.ERROR, message, **extra)
        self.listeners.broadcast({"type": "execution_error", "error": message})
        return None

    # --- Introspection ---

    def status(self) -> dict:
        active = self.executor.active
        return {
            "connection": self.client.status.model_dump(mode="json"),
            "kill_switch": self.kill_switch.active,
            "active_execution": (
                {
                    "transaction_id": active.transaction_id,
                    "current_step": active.current_step_index,
                    "total_steps": len(active.steps),
                }
                if active
                else None
            ),
            "rules": len(self.rules.rules),
            "controller_url": self.controller_url,
            "response_target": self.response_target,
            "response_targets": self.sources.targets(),
        }

    def logs(self, limit: Optional[int] = None) -> List[str]:
        return self.activity.entries(limit)

    def active_rules(self) -> List[dict]:
        return [r.model_dump(mode="json") for r in self.rules.rules]

    def pending_tasks(self) -> Iterable[asyncio.Task]:
        return list(self._tasks)

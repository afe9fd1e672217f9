"""Tests for the Orchestrator: routing, pipeline and kill switch."""

import asyncio
import json

import pytest

from taskrelay.config import RelaySettings
from taskrelay.dispatch.orchestrator import DispatchEvent, DispatchEventKind, Orchestrator
from taskrelay.execution.actions import SimulatedActionRunner
from taskrelay.models.execution import ExecutionOutcome
from taskrelay.models.messages import ExecuteRequest
from taskrelay.pipeline.sources import ResponseSourceRegistry, StaticResponseSource


def _plan(*steps: tuple) -> str:
    return "Here is the plan:\n```json\n" + json.dumps({
        "steps": [{"action": a, "params": p} for a, p in steps]
    }) + "\n```"


SEARCH_PLAN = _plan(
    ("open_url", {"url": "https://example.com"}),
    ("click_element", {"target": "Search"}),
)


class GatedRunner(SimulatedActionRunner):
    """Blocks every command until `release` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, command):
        self.started.set()
        await self.release.wait()
        return await super().run(command)


class HangingSource:
    async def fetch(self, prompt: str, target: str) -> str:
        await asyncio.Event().wait()
        return ""


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _make_orchestrator(connector, fake_sleep, responses=(), runner=None, **overrides):
    settings = RelaySettings(auto_connect=False, **overrides)
    source = StaticResponseSource(list(responses))
    sources = ResponseSourceRegistry()
    sources.register("chatgpt", source)
    orch = Orchestrator(
        settings=settings,
        runner=runner or SimulatedActionRunner(),
        sources=sources,
        connector=connector,
        sleep=fake_sleep,
        reconnect_sleep=fake_sleep,
    )
    await orch.connect()
    await orch.process_pending()
    return orch, source


def _statuses(conn) -> list:
    return [m["status"] for m in conn.sent_of_type("execution_status")]


class TestPipeline:
    async def test_full_run(self, connector, fake_sleep):
        orch, source = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        result = await orch.run_pipeline(ExecuteRequest(prompt="find shoes", transaction_id="tx_1"))

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert [c.action for c in orch.runner.commands] == ["open_url", "click_element"]
        assert source.prompts[0].startswith("find shoes")
        conn = connector.last
        assert _statuses(conn) == ["planning", "executing", "step", "step"]
        final = conn.sent_of_type("execution_result")
        assert len(final) == 1
        assert final[0]["transaction_id"] == "tx_1"
        assert final[0]["steps_executed"] == 2
        assert final[0]["steps_failed"] == 0
        await orch.stop()

    async def test_duplicate_transaction_ignored(self, connector, fake_sleep):
        orch, source = await _make_orchestrator(
            connector, fake_sleep, [SEARCH_PLAN, SEARCH_PLAN]
        )

        await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))
        second = await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        assert second is None
        assert len(source.prompts) == 1
        assert any("duplicate transaction" in line for line in orch.logs())
        await orch.stop()

    async def test_missing_prompt(self, connector, fake_sleep):
        orch, source = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        assert await orch.run_pipeline(ExecuteRequest(prompt="")) is None
        assert source.prompts == []
        await orch.stop()

    async def test_unparseable_response(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep, ["Sorry, I can't do that."])

        assert await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1")) is None

        errors = connector.last.sent_of_type("execution_status")
        assert errors[-1]["status"] == "error"
        assert errors[-1]["message"] == "Failed to parse JSON from response"
        await orch.stop()

    async def test_validation_errors_reported(self, connector, fake_sleep):
        plan = _plan(("launch_rocket", {}), ("open_url", {"url": "https://a.com"}))
        orch, _ = await _make_orchestrator(connector, fake_sleep, [plan])

        await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        last = connector.last.sent_of_type("execution_status")[-1]
        assert last["status"] == "error"
        assert last["message"].startswith("Validation errors:")
        assert last["errors"] == ['Step 1: unknown action "launch_rocket"']
        assert orch.runner.commands == []
        await orch.stop()

    async def test_unsafe_plan_blocked(self, connector, fake_sleep):
        plan = _plan(
            ("open_url", {"url": "https://example.com/account"}),
            ("click_element", {"target": "Delete my account"}),
        )
        orch, _ = await _make_orchestrator(connector, fake_sleep, [plan])

        assert await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1")) is None

        last = connector.last.sent_of_type("execution_status")[-1]
        assert last["status"] == "blocked"
        assert "Step 2" in last["message"]
        assert orch.runner.commands == []
        await orch.stop()

    async def test_remote_steps_forwarded(self, connector, fake_sleep):
        plan = _plan(
            ("open_url", {"url": "https://example.com"}),
            ("summarize_page", {"length": "short"}),
        )
        orch, _ = await _make_orchestrator(
            connector, fake_sleep, [plan], remote_actions=["summarize_page"]
        )

        result = await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        forwarded = connector.last.sent_of_type("execute_remote_actions")
        assert len(forwarded) == 1
        assert [s["action"] for s in forwarded[0]["steps"]] == ["summarize_page"]
        assert forwarded[0]["steps"][0]["safety_check"] == "passed"
        assert result.total_steps == 1
        assert [c.action for c in orch.runner.commands] == ["open_url"]
        await orch.stop()

    async def test_unsupported_target(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])
        await orch.update_settings({"response_target": "gemini"})

        await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        last = connector.last.sent_of_type("execution_status")[-1]
        assert last["status"] == "error"
        assert "Unsupported response target: gemini" in last["message"]
        await orch.stop()

    async def test_response_timeout(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(
            connector, fake_sleep, response_timeout_seconds=0.01
        )
        orch.sources.register("chatgpt", HangingSource())

        await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        last = connector.last.sent_of_type("execution_status")[-1]
        assert last["status"] == "error"
        assert "Timed out" in last["message"]
        await orch.stop()

    async def test_prompt_pii_masked_in_logs(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        await orch.run_pipeline(
            ExecuteRequest(prompt="email bob@example.com the report", transaction_id="tx_1")
        )

        joined = "\n".join(orch.logs())
        assert "[EMAIL_MASKED]" in joined
        assert "bob@example.com" not in joined
        await orch.stop()


class TestKillSwitch:
    async def test_kill_blocks_new_runs(self, connector, fake_sleep):
        orch, source = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        await orch.kill()
        result = await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        assert result is None
        assert source.prompts == []
        assert _statuses(connector.last) == []
        acks = connector.last.sent_of_type("kill_switch_ack")
        assert acks[-1]["active"] is True
        # The blocked request never reached the ledger
        assert "tx_1" not in orch.ledger
        await orch.stop()

    async def test_kill_during_run_stops_at_next_step(self, connector, fake_sleep):
        plan = _plan(
            ("open_url", {"url": "https://example.com"}),
            ("click_element", {"target": "Search"}),
            ("wait", {"ms": 100}),
        )
        runner = GatedRunner()
        orch, _ = await _make_orchestrator(connector, fake_sleep, [plan], runner=runner)

        task = orch.submit(ExecuteRequest(prompt="go", transaction_id="tx_1"))
        await runner.started.wait()
        assert orch.status()["active_execution"]["transaction_id"] == "tx_1"

        await orch.kill()
        runner.release.set()
        result = await task

        assert result.outcome == ExecutionOutcome.KILLED
        assert result.steps_attempted == 1
        assert len(runner.commands) == 1
        last = connector.last.sent_of_type("execution_status")[-1]
        assert last["status"] == "killed"
        assert last["step"] == 1
        assert orch.executor.active is None
        await orch.stop()

    async def test_reset_allows_execution_again(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        await orch.kill()
        await orch.reset_kill()
        result = await orch.run_pipeline(ExecuteRequest(prompt="go", transaction_id="tx_1"))

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert connector.last.sent_of_type("kill_switch_ack")[-1]["active"] is False
        await orch.stop()


class TestControllerRouting:
    async def _deliver(self, orch, connector, message: dict) -> None:
        connector.last.feed(json.dumps(message))
        await _settle()
        await orch.process_pending()

    async def test_register_triggers_and_observe(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await self._deliver(orch, connector, {
            "type": "register_triggers",
            "payload": {"rules": [
                {"id": "meetings", "criteria": {"type": "category", "value": "meeting"}},
                {"id": "broken"},
            ]},
        })
        assert [r["id"] for r in orch.active_rules()] == ["meetings"]

        fired = await orch.observe("https://meet.google.com/abc-defg-hij")

        assert fired == ["meetings"]
        conn = connector.last
        assert conn.sent_of_type("url_trigger")[-1]["payload"]["category"] == "meeting"
        assert conn.sent_of_type("rule_triggered")[-1]["payload"]["rule_id"] == "meetings"
        await orch.stop()

    async def test_invalid_rules_payload(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await self._deliver(orch, connector, {"type": "register_triggers", "payload": {}})

        assert orch.active_rules() == []
        assert any("invalid or missing rules" in line for line in orch.logs())
        await orch.stop()

    async def test_execute_prompt_message(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        await self._deliver(orch, connector, {
            "type": "execute_prompt",
            "payload": {"prompt": "find shoes", "transactionId": "tx_9"},
        })
        await asyncio.gather(*orch.pending_tasks())

        assert "tx_9" in orch.ledger
        assert connector.last.sent_of_type("execution_result")[-1]["transaction_id"] == "tx_9"
        await orch.stop()

    async def test_kill_and_reset_messages(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await self._deliver(orch, connector, {"type": "kill_switch"})
        assert orch.kill_switch.active

        await self._deliver(orch, connector, {"type": "reset_kill_switch"})
        assert not orch.kill_switch.active
        await orch.stop()

    async def test_unknown_message_logged(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await self._deliver(orch, connector, {"type": "mystery"})

        assert any("Unknown controller message type: mystery" in line for line in orch.logs())
        await orch.stop()

    async def test_connection_ack_logged(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await self._deliver(orch, connector, {"type": "connection_ack", "agent": "planner-1"})

        assert any("Controller acknowledged: planner-1" in line for line in orch.logs())
        await orch.stop()


class TestObservations:
    async def test_observation_without_rules(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        assert await orch.observe("https://www.youtube.com/watch?v=1") == []
        assert connector.last.sent_of_type("url_trigger")[-1]["payload"]["category"] == "social"
        assert connector.last.sent_of_type("rule_triggered") == []
        await orch.stop()

    async def test_repeated_url_ignored(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await orch.observe("https://zoom.us/j/1")
        await orch.observe("https://zoom.us/j/1")

        assert len(connector.last.sent_of_type("url_trigger")) == 1
        await orch.stop()

    async def test_observation_event(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        orch.post(DispatchEvent(DispatchEventKind.OBSERVATION, {"url": "https://zoom.us/j/1"}))
        await orch.process_pending()

        assert len(connector.last.sent_of_type("url_trigger")) == 1
        await orch.stop()


class TestLifecycle:
    async def test_disconnect_logged_and_reconnects(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await orch.disconnect()
        await orch.process_pending()
        assert any("Disconnected from controller" in line for line in orch.logs())

        await _settle(20)
        await orch.process_pending()
        assert orch.client.connected
        assert len(connector.connections) == 2
        await orch.stop()

    async def test_offline_sends_are_dropped(self, connector, fake_sleep):
        settings = RelaySettings(auto_connect=False)
        orch = Orchestrator(settings=settings, connector=connector, sleep=fake_sleep)

        await orch.kill()

        assert connector.connections == []
        assert orch.kill_switch.active
        await orch.stop()

    async def test_status_snapshot(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        status = orch.status()

        assert status["connection"]["state"] == "connected"
        assert status["kill_switch"] is False
        assert status["active_execution"] is None
        assert status["response_target"] == "chatgpt"
        assert status["response_targets"] == ["chatgpt"]
        await orch.stop()

    async def test_runtime_settings_override(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)

        await orch.update_settings({"controller_url": "ws://other:4545/automation"})

        assert orch.controller_url == "ws://other:4545/automation"
        assert orch.settings.controller_url == "ws://localhost:4545/automation"
        await orch.stop()

    async def test_listeners_receive_broadcasts(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)
        queue = orch.listeners.subscribe()

        await orch.kill()

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        assert {"type": "kill_switch", "active": True} in events
        assert any(e["type"] == "log" for e in events)
        await orch.stop()

    async def test_run_loop_processes_posted_events(self, connector, fake_sleep):
        orch, _ = await _make_orchestrator(connector, fake_sleep)
        await orch.start()

        orch.post(DispatchEvent(DispatchEventKind.KILL))
        await _settle()

        assert orch.kill_switch.active
        await orch.stop()

    async def test_stop_unwinds_running_pipeline(self, connector, fake_sleep):
        runner = GatedRunner()
        orch, _ = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN], runner=runner)
        await orch.start()

        task = orch.submit(ExecuteRequest(prompt="go", transaction_id="tx_1"))
        await runner.started.wait()
        assert orch.executor.active is not None

        await orch.stop()

        assert task.cancelled()
        assert orch.executor.active is None
        assert list(orch.pending_tasks()) == []
        assert not orch.client.connected

    async def test_submit_with_claimed_id_runs(self, connector, fake_sleep):
        orch, source = await _make_orchestrator(connector, fake_sleep, [SEARCH_PLAN])

        assert orch.ledger.record("tx_1")
        result = await orch.submit(
            ExecuteRequest(prompt="go", transaction_id="tx_1"), recorded=True
        )

        assert result.outcome == ExecutionOutcome.COMPLETED
        assert len(source.prompts) == 1
        await orch.stop()

"""Controller wire messages — JSON records exchanged over the controller link."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from taskrelay.models.execution import ExecutionResult
from taskrelay.models.plan import PlanStep
from taskrelay.models.rules import Observation

SOURCE = "relay"


class InboundKind(str, Enum):
    CONNECTION_ACK = "connection_ack"
    PONG = "pong"
    EXECUTE_PROMPT = "execute_prompt"
    REGISTER_TRIGGERS = "register_triggers"
    KILL_SWITCH = "kill_switch"
    RESET_KILL_SWITCH = "reset_kill_switch"


class OutboundKind(str, Enum):
    PING = "ping"
    EXECUTION_STATUS = "execution_status"
    EXECUTION_RESULT = "execution_result"
    RULE_TRIGGERED = "rule_triggered"
    URL_TRIGGER = "url_trigger"
    EXECUTE_REMOTE_ACTIONS = "execute_remote_actions"
    KILL_SWITCH_ACK = "kill_switch_ack"
    LOG = "log"


class ExecutionStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    STEP = "step"
    BLOCKED = "blocked"
    ERROR = "error"
    KILLED = "killed"
    COMPLETED = "completed"


class ExecuteRequest(BaseModel):
    """An inbound request to plan and run a task."""

    prompt: str = ""
    transaction_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "ExecuteRequest":
        """Accept the key spellings controllers use in practice."""
        prompt = payload.get("prompt") or payload.get("text") or ""
        tx_id = payload.get("transaction_id") or payload.get("transactionId")
        return cls(prompt=str(prompt), transaction_id=str(tx_id) if tx_id else None)


def _now() -> str:
    return datetime.utcnow().isoformat()


def ping() -> dict:
    return {"type": OutboundKind.PING.value, "source": SOURCE}


def execution_status(
    transaction_id: str,
    status: ExecutionStatus,
    message: str,
    **extra,
) -> dict:
    record = {
        "type": OutboundKind.EXECUTION_STATUS.value,
        "source": SOURCE,
        "transaction_id": transaction_id,
        "status": status.value,
        "message": message,
    }
    record.update(extra)
    return record


def execution_result(result: ExecutionResult, message: str) -> dict:
    return {
        "type": OutboundKind.EXECUTION_RESULT.value,
        "source": SOURCE,
        "transaction_id": result.transaction_id,
        "status": ExecutionStatus.COMPLETED.value,
        "message": message,
        "steps_executed": result.total_steps,
        "steps_failed": result.steps_failed,
    }


def rule_triggered(rule_id: str) -> dict:
    return {
        "type": OutboundKind.RULE_TRIGGERED.value,
        "source": SOURCE,
        "payload": {"rule_id": rule_id},
        "timestamp": _now(),
    }


def url_trigger(observation: Observation) -> dict:
    return {
        "type": OutboundKind.URL_TRIGGER.value,
        "source": SOURCE,
        "payload": {
            "url": observation.url,
            "domain": observation.domain,
            "category": observation.category,
            "timestamp": (observation.observed_at or datetime.utcnow()).isoformat(),
        },
    }


def remote_actions(transaction_id: str, steps: List[PlanStep]) -> dict:
    return {
        "type": OutboundKind.EXECUTE_REMOTE_ACTIONS.value,
        "source": SOURCE,
        "transaction_id": transaction_id,
        "steps": [s.model_dump(mode="json") for s in steps],
    }


def kill_switch_ack(active: bool) -> dict:
    return {
        "type": OutboundKind.KILL_SWITCH_ACK.value,
        "source": SOURCE,
        "active": active,
        "message": (
            "Kill switch activated" if active else "Kill switch reset"
        ),
    }


def log_line(message: str) -> dict:
    return {
        "type": OutboundKind.LOG.value,
        "source": SOURCE,
        "message": message,
        "timestamp": _now(),
    }

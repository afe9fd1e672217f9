"""
TaskRelay API — FastAPI control surface.

Exposes the orchestrator to local operators for:
- Connection control and status
- Submitting execute requests
- Kill switch activation and reset
- Trigger rule management and location observations
- Activity log and runtime settings
- A live event stream for passive listeners
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, WebSocket
from pydantic import BaseModel, Field

from taskrelay.config import RelaySettings, configure_logging, get_settings
from taskrelay.dispatch.orchestrator import Orchestrator
from taskrelay.models.messages import ExecuteRequest


# --- Request/Response Models ---

class ExecuteBody(BaseModel):
    prompt: str = Field(min_length=1)
    transaction_id: Optional[str] = None


class RulesBody(BaseModel):
    rules: List[dict]


class ObservationBody(BaseModel):
    url: str


class SettingsBody(BaseModel):
    controller_url: Optional[str] = None
    response_target: Optional[str] = None


# --- Application Factory ---

def create_app(
    orchestrator: Optional[Orchestrator] = None,
    settings: Optional[RelaySettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or (orchestrator.settings if orchestrator else get_settings())
    orch = orchestrator or Orchestrator(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        await orch.start()
        try:
            yield
        finally:
            await orch.stop()

    app = FastAPI(
        title="TaskRelay API",
        description="Browser task relay: triggers, planning and step execution",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orch

    # === CONNECTION ===

    @app.get("/status")
    def get_status():
        """Connection, kill switch and execution snapshot."""
        return orch.status()

    @app.post("/connect")
    async def connect():
        """Open the controller link (no-op when already connected)."""
        await orch.connect()
        return orch.client.status.model_dump(mode="json")

    @app.post("/disconnect")
    async def disconnect():
        """Drop the controller link."""
        await orch.disconnect()
        return orch.client.status.model_dump(mode="json")

    # === EXECUTION ===

    @app.post("/execute", status_code=202)
    async def execute(req: ExecuteBody):
        """Accept a prompt for planning and execution."""
        if orch.kill_switch.active:
            raise HTTPException(409, "Kill switch is active; reset before executing")
        tx_id = req.transaction_id or str(uuid4())
        if not orch.ledger.record(tx_id):
            raise HTTPException(409, f"Transaction {tx_id} was already processed")
        orch.submit(ExecuteRequest(prompt=req.prompt, transaction_id=tx_id), recorded=True)
        return {"status": "accepted", "transaction_id": tx_id}

    @app.post("/kill")
    async def kill():
        """Halt the current and all future runs until reset."""
        await orch.kill()
        return {"kill_switch": True}

    @app.post("/kill/reset")
    async def reset_kill():
        await orch.reset_kill()
        return {"kill_switch": False}

    # === TRIGGERS ===

    @app.get("/rules")
    def get_rules():
        return orch.active_rules()

    @app.put("/rules")
    async def replace_rules(req: RulesBody):
        """Replace the whole rule set. Malformed entries are dropped."""
        accepted = await orch.register_rules(req.rules)
        return {"accepted": accepted, "dropped": len(req.rules) - len(accepted)}

    @app.post("/observations")
    async def observe(req: ObservationBody):
        """Report a location change; returns the rules that fired."""
        fired = await orch.observe(req.url)
        return {"fired": fired}

    # === LOGS & SETTINGS ===

    @app.get("/logs")
    def get_logs(limit: Optional[int] = None):
        return orch.logs(limit)

    @app.get("/settings")
    def get_runtime_settings():
        return {
            "controller_url": orch.controller_url,
            "response_target": orch.response_target,
            "stored": orch.store.all(),
        }

    @app.put("/settings")
    async def update_runtime_settings(req: SettingsBody):
        values: Dict[str, Any] = req.model_dump(exclude_none=True)
        if not values:
            raise HTTPException(422, "No settings supplied")
        await orch.update_settings(values)
        return {
            "controller_url": orch.controller_url,
            "response_target": orch.response_target,
        }

    # === EVENTS ===

    @app.websocket("/events")
    async def events(websocket: WebSocket):
        """Stream broadcasts to a passive listener."""
        queue = orch.listeners.subscribe()

        async def forward():
            while True:
                await websocket.send_json(await queue.get())

        sender: Optional[asyncio.Task] = None
        try:
            await websocket.accept()
            sender = asyncio.create_task(forward())
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            if sender is not None:
                sender.cancel()
            orch.listeners.remove(queue)

    return app


# Default application instance
app = create_app()

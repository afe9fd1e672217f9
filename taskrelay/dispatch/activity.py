"""Activity Log — the human-readable reporting channel."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from taskrelay.dispatch.listeners import ListenerHub
from taskrelay.models.messages import log_line
from taskrelay.pipeline.safety import mask_pii
from taskrelay.store.settings_store import SettingsStore

if TYPE_CHECKING:
    from taskrelay.transport.client import ControllerClient

logger = logging.getLogger("taskrelay.activity")


class ActivityLog:
    """
    Every entry is PII-masked, then written to the process log, the
    persisted bounded log list, the controller (when connected) and
    any listeners.
    """

    def __init__(
        self,
        store: SettingsStore,
        listeners: ListenerHub,
        client: Optional["ControllerClient"] = None,
    ):
        self.store = store
        self.listeners = listeners
        self.client = client

    async def add(self, message: str, level: int = logging.INFO) -> str:
        masked = mask_pii(message)
        entry = f"[{datetime.now().strftime('%H:%M:%S')}] {masked}"
        logger.log(level, masked)

        self.store.append_log(entry)
        if self.client is not None and self.client.connected:
            await self.client.send(log_line(masked))
        self.listeners.broadcast({"type": "log", "message": entry})
        return entry

    def entries(self, limit: Optional[int] = None) -> List[str]:
        return self.store.logs(limit)

"""Connection State — lifecycle of the controller link."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStatus(BaseModel):
    """Snapshot of the transport client's state machine."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    attempts: int = 0                       # Reconnect attempts since last success
    last_error: Optional[str] = None
    url: Optional[str] = None

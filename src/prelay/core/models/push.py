from enum import StrEnum
from typing import Any, Dict, FrozenSet

from pydantic import BaseModel, ConfigDict

# Outbound frame event names
FRAME_MESSAGE = "message"
FRAME_NOTIFICATION = "notification"
FRAME_KEEP_ALIVE = "keep-alive"


class ConnectionState(StrEnum):
    connecting = "connecting"
    open = "open"
    closed = "closed"


class PushFrame(BaseModel):
    """One outbound server-sent event: `event` name plus JSON `data`."""

    model_config = ConfigDict(frozen=True)

    event: str
    data: Dict[str, Any]


class ConnectionInfo(BaseModel):
    """Read-only view of a push connection."""

    model_config = ConfigDict(frozen=True)

    id: str
    state: ConnectionState
    reconnect_attempts: int
    subscriptions: FrozenSet[str]

from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    PERMANENTLY_FAILED = "permanently_failed"


class BookMessageType(StrEnum):
    SNAPSHOT = "snapshot"
    DELTA = "delta"

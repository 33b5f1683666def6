"""Pydantic models for peer sessions and pairing."""

import time
from enum import Enum

from pydantic import BaseModel, Field

from p2p.protocol import WireModel


class P2PMode(str, Enum):
    OFF = "off"
    SERVER = "server"
    CLIENT = "client"


class ConnectionStatus(str, Enum):
    """Connection state surfaced to the operator."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class PeerAddress(WireModel):
    ip: str
    port: int


class Connection(BaseModel):
    """One live transport session with a peer."""
    connection_id: str
    peer_address: PeerAddress
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    device_name: str | None = None
    paired: bool = False
    opened_at: float = Field(default_factory=time.time)
    generation: int = 0  # mode generation the session was opened under


class PairingRequest(BaseModel):
    """An inbound pairing request awaiting the operator's decision."""
    connection_id: str
    device_id: str
    device_name: str
    pin: str | None = None
    received_at: float = Field(default_factory=time.time)


# --- Wire payloads ---

class PairRequestPayload(WireModel):
    device_id: str
    device_name: str
    pin: str | None = None


class PairResponsePayload(WireModel):
    accepted: bool
    device_id: str | None = None
    device_name: str | None = None

"""Pydantic models for device identity and peer discovery."""

from typing import Literal

from config import PROTOCOL_VERSION
from p2p.protocol import WireModel


class DeviceIdentity(WireModel):
    """Stable identity of this installation."""
    device_id: str
    device_name: str
    role: Literal["controller", "player"] = "player"


class DiscoverResponse(WireModel):
    """Body served at GET /api/discover by a device in server mode."""
    role: str
    device_id: str
    device_name: str
    port: int | None = None
    version: str = PROTOCOL_VERSION


class DiscoveredController(WireModel):
    """A controller that answered a discovery probe."""
    device_id: str
    device_name: str
    ip: str
    port: int
    version: str = PROTOCOL_VERSION

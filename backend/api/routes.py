"""REST control API for the local operator UI."""

import logging

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import BaseModel, Field

from discovery.service import DiscoveryError
from p2p.models import ConnectionStatus, P2PMode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _node(request: Request):
    return request.app.state.node


# --- Status / mode / settings ---

class ModeBody(BaseModel):
    mode: P2PMode


class SettingsBody(BaseModel):
    device_name: str | None = None
    server_port: int | None = Field(default=None, ge=1, le=65535)


@router.get("/status")
async def get_status(request: Request):
    return _node(request).status()


@router.put("/mode")
async def set_mode(body: ModeBody, request: Request):
    node = _node(request)
    await node.manager.set_mode(body.mode)
    if body.mode == P2PMode.SERVER and not node.manager.server_running:
        raise HTTPException(status_code=500, detail=f"Could not listen on port {node.manager.server_port}")
    return node.status()


@router.get("/settings")
async def get_settings(request: Request):
    node = _node(request)
    return {
        "device_name": node.identity.device_name,
        "server_port": node.manager.server_port,
        "auto_connect": node.auto_connect,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody, request: Request):
    node = _node(request)
    if body.device_name is not None:
        if not body.device_name.strip():
            raise HTTPException(status_code=400, detail="Device name cannot be empty")
        node.identity.device_name = body.device_name.strip()
    if body.server_port is not None and body.server_port != node.manager.server_port:
        node.discovery.port = body.server_port
        if node.manager.mode == P2PMode.SERVER:
            if not await node.manager.start_server(body.server_port):
                raise HTTPException(status_code=500, detail=f"Could not listen on port {body.server_port}")
        else:
            node.manager.server_port = body.server_port
    return {"status": "updated"}


# --- Discovery ---

@router.post("/discovery/scan")
async def scan(request: Request):
    try:
        controllers = await _node(request).scan_and_connect()
    except DiscoveryError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"controllers": [c.to_wire() for c in controllers]}


@router.post("/discovery/stop")
async def stop_scan(request: Request):
    _node(request).discovery.stop_scan()
    return {"status": "stopped"}


# --- Connections ---

class ConnectBody(BaseModel):
    ip: str
    port: int = Field(ge=1, le=65535)


@router.post("/connect")
async def connect(body: ConnectBody, request: Request):
    node = _node(request)
    if not await node.manager.connect_to_server(body.ip, body.port):
        raise HTTPException(status_code=502, detail=f"Could not connect to {body.ip}:{body.port}")
    return node.status()


@router.post("/disconnect")
async def disconnect(request: Request):
    node = _node(request)
    await node.manager.disconnect()
    return node.status()


@router.post("/connections/{connection_id}/select")
async def select_connection(connection_id: str, request: Request):
    if not _node(request).manager.select_connection(connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"selected": connection_id}


# --- Pairing ---

class AcceptBody(BaseModel):
    remember: bool = True


@router.get("/pairing")
async def get_pairing(request: Request):
    pairing = _node(request).pairing
    return {
        "pending": pairing.pending.model_dump(mode="json") if pairing.pending else None,
        "queued": [r.model_dump(mode="json") for r in pairing.queued],
        "outgoing": pairing.outgoing,
    }


@router.post("/pairing/accept")
async def accept_pairing(request: Request, body: AcceptBody | None = None):
    remember = body.remember if body is not None else True
    accepted = await _node(request).pairing.accept(remember=remember)
    if accepted is None:
        raise HTTPException(status_code=404, detail="No pending pairing request")
    return {"accepted": accepted.model_dump(mode="json")}


@router.post("/pairing/reject")
async def reject_pairing(request: Request):
    rejected = await _node(request).pairing.reject()
    if rejected is None:
        raise HTTPException(status_code=404, detail="No pending pairing request")
    return {"rejected": rejected.model_dump(mode="json")}


@router.post("/pairing/request")
async def request_pairing(request: Request):
    node = _node(request)
    if node.manager.mode != P2PMode.CLIENT or node.manager.status != ConnectionStatus.CONNECTED:
        raise HTTPException(status_code=409, detail="Not connected to a controller")
    if not await node.pairing.request_pairing():
        raise HTTPException(status_code=502, detail="Could not send pairing request")
    return {"outgoing": node.pairing.outgoing}


# --- Trusted peers ---

class TrustedPeerPatch(BaseModel):
    device_name: str | None = None
    auto_connect: bool | None = None


@router.get("/trusted")
async def list_trusted(request: Request):
    return {"peers": [p.to_wire() for p in _node(request).trust_store.all()]}


@router.patch("/trusted/{device_id}")
async def update_trusted(device_id: str, body: TrustedPeerPatch, request: Request):
    changes = body.model_dump(exclude_none=True)
    peer = _node(request).trust_store.update(device_id, **changes)
    if peer is None:
        raise HTTPException(status_code=404, detail="Trusted peer not found")
    return peer.to_wire()


@router.delete("/trusted/{device_id}")
async def remove_trusted(device_id: str, request: Request):
    if not _node(request).trust_store.remove(device_id):
        raise HTTPException(status_code=404, detail="Trusted peer not found")
    return {"status": "removed"}


# --- Remote playback (controller side) ---

@router.post("/commands/{command}")
async def send_command(command: str, request: Request, options: dict | None = Body(default=None)):
    node = _node(request)
    try:
        sent = await node.remote.command(command, options)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not sent:
        raise HTTPException(status_code=409, detail="No player to send to")
    return {"status": "sent"}


@router.get("/player/state")
async def player_state(request: Request):
    return _node(request).mirror.state


# --- Profile sync ---

@router.post("/sync/profile")
async def push_profile(request: Request):
    node = _node(request)
    if node.manager.mode != P2PMode.SERVER:
        raise HTTPException(status_code=409, detail="Profile push requires server mode")
    return {"sent": await node.synchronizer.push_profile()}


@router.post("/sync/full")
async def full_sync(request: Request):
    node = _node(request)
    if node.manager.mode != P2PMode.CLIENT or node.manager.status != ConnectionStatus.CONNECTED:
        raise HTTPException(status_code=409, detail="Not connected to a controller")
    if not node.synchronizer.start_full_sync():
        raise HTTPException(status_code=409, detail="Full sync already in progress")
    return {"status": "requested"}


# --- Profiles ---

class CreateProfileBody(BaseModel):
    username: str = Field(min_length=1)
    source_url: str
    source: str | None = None
    select: bool = True


@router.get("/profiles")
async def list_profiles(request: Request):
    repository = _node(request).repository
    current = await repository.current()
    return {
        "profiles": [p.to_wire() for p in await repository.list_profiles()],
        "current": current.to_wire() if current else None,
    }


@router.post("/profiles")
async def create_profile(body: CreateProfileBody, request: Request):
    repository = _node(request).repository
    descriptor = await repository.create_profile(body.username, body.source_url, body.source)
    if body.select:
        descriptor = await repository.select(descriptor.username, descriptor.uuid)
    return descriptor.to_wire()


@router.post("/profiles/{username}/select")
async def select_profile(username: str, request: Request, uuid: str | None = None):
    try:
        descriptor = await _node(request).repository.select(username, uuid)
    except KeyError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return descriptor.to_wire()

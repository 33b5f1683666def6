"""
Pairing authority: turns an unauthenticated session into a trusted peer.

Server side: inbound ``pair_request`` messages are queued and surfaced to
the operator one at a time; the operator accepts or rejects the head of
the queue, or it expires after PAIRING_TIMEOUT. Devices already in the
trust store are accepted without asking.

Client side: ``request_pairing`` sends our identity with a short PIN the
operator can compare, and ``pair_response`` either records the controller
as trusted or just clears the pending state. Rejections are never retried
automatically.
"""

import asyncio
import logging
import random
from collections import deque

from config import AUTO_CONNECT, PAIRING_TIMEOUT
from p2p.events import EventEmitter
from p2p.models import P2PMode, PairingRequest, PairRequestPayload, PairResponsePayload
from p2p.protocol import Message, MessageType

logger = logging.getLogger(__name__)


def generate_pin() -> str:
    return str(random.randint(1000, 9999))


class PairingAuthority(EventEmitter):
    """Operator-gated pairing for both sides of a session."""

    def __init__(
        self,
        manager,
        identity,
        trust_store,
        timeout: float = PAIRING_TIMEOUT,
        auto_connect: bool = AUTO_CONNECT,
    ) -> None:
        super().__init__()
        self._manager = manager
        self._identity = identity
        self._trust_store = trust_store
        self._timeout = timeout
        self._auto_connect = auto_connect

        # Server side
        self._queue: deque[PairingRequest] = deque()
        self.pending: PairingRequest | None = None
        self._timeout_task: asyncio.Task | None = None

        # Client side: {"connection_id": ..., "pin": ...} while awaiting a response
        self.outgoing: dict | None = None

    def register(self, router) -> None:
        router.register(MessageType.PAIR_REQUEST, self.handle_pair_request)
        router.register(MessageType.PAIR_RESPONSE, self.handle_pair_response)

    @property
    def queued(self) -> list[PairingRequest]:
        return list(self._queue)

    # --- Server side ---

    async def handle_pair_request(self, connection_id: str, message: Message) -> None:
        if self._manager.mode != P2PMode.SERVER:
            logger.warning(f"Ignoring pair_request from {connection_id}: not in server mode")
            return

        payload = PairRequestPayload.model_validate(message.payload or {})
        if self._manager.is_paired(connection_id):
            logger.debug(f"Connection {connection_id} is already paired")
            return

        request = PairingRequest(
            connection_id=connection_id,
            device_id=payload.device_id,
            device_name=payload.device_name,
            pin=payload.pin,
        )

        if self._trust_store.get(request.device_id) is not None:
            logger.info(f"Auto-accepting trusted device {request.device_name} ({request.device_id})")
            await self._accept(request, remember=True)
            return

        outstanding = ([self.pending] if self.pending else []) + list(self._queue)
        if any(r.connection_id == connection_id for r in outstanding):
            logger.info(f"Pairing request from {connection_id} already outstanding, ignoring duplicate")
            return

        self._queue.append(request)
        logger.info(f"Pairing request from {request.device_name}, PIN: {request.pin}")
        if self.pending is None:
            await self._surface_next()
        else:
            await self._emit("pairing_queued", request.model_dump(mode="json"))

    async def accept(self, remember: bool = True) -> PairingRequest | None:
        """Operator accepted the surfaced request."""
        request = self.pending
        if request is None:
            return None
        self._cancel_timeout()
        await self._accept(request, remember)
        await self._surface_next()
        return request

    async def reject(self) -> PairingRequest | None:
        """Operator rejected the surfaced request."""
        request = self.pending
        if request is None:
            return None
        self._cancel_timeout()
        await self._reject(request)
        await self._surface_next()
        return request

    async def discard_connection(self, connection_id: str) -> None:
        """Forget requests from a session that has closed."""
        self._queue = deque(r for r in self._queue if r.connection_id != connection_id)
        if self.pending is not None and self.pending.connection_id == connection_id:
            self._cancel_timeout()
            await self._emit("pairing_cleared", {"connection_id": connection_id})
            await self._surface_next()
        if self.outgoing is not None and self.outgoing["connection_id"] == connection_id:
            self.outgoing = None

    async def reset(self) -> None:
        """Drop every pending decision (mode switch)."""
        self._cancel_timeout()
        self._queue.clear()
        had_pending = self.pending is not None
        self.pending = None
        self.outgoing = None
        if had_pending:
            await self._emit("pairing_cleared", {})

    async def _accept(self, request: PairingRequest, remember: bool) -> None:
        response = PairResponsePayload(
            accepted=True,
            device_id=self._identity.device_id,
            device_name=self._identity.device_name,
        )
        await self._manager.send(
            request.connection_id, Message.build(MessageType.PAIR_RESPONSE, response)
        )
        await self._manager.mark_paired(request.connection_id, request.device_name)
        if remember:
            self._trust_store.add_trusted_peer(request.device_id, request.device_name)

        logger.info(f"Pairing accepted for {request.device_name} ({request.device_id})")
        await self._emit("pairing_accepted", request.model_dump(mode="json"))

    async def _reject(self, request: PairingRequest) -> None:
        response = PairResponsePayload(accepted=False, device_id=self._identity.device_id)
        await self._manager.send(
            request.connection_id, Message.build(MessageType.PAIR_RESPONSE, response)
        )
        logger.info(f"Pairing rejected for {request.device_name} ({request.device_id})")
        await self._emit("pairing_rejected", request.model_dump(mode="json"))

    async def _surface_next(self) -> None:
        """Show the next live request to the operator, if any."""
        self.pending = None
        while self._queue:
            request = self._queue.popleft()
            if self._manager.get_connection(request.connection_id) is None:
                continue
            self.pending = request
            self._timeout_task = asyncio.create_task(self._expire(request))
            await self._emit("pairing_request", request.model_dump(mode="json"))
            return

    async def _expire(self, request: PairingRequest) -> None:
        await asyncio.sleep(self._timeout)
        if self.pending is not request:
            return
        self._timeout_task = None
        logger.info(f"Pairing request from {request.device_name} timed out")
        await self._reject(request)
        await self._surface_next()

    def _cancel_timeout(self) -> None:
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            self._timeout_task = None

    # --- Client side ---

    async def request_pairing(self, connection_id: str | None = None) -> bool:
        """Send our identity to the controller we are connected to."""
        if self._manager.mode != P2PMode.CLIENT:
            return False
        if connection_id is None:
            connections = self._manager.get_connections()
            if not connections:
                return False
            connection_id = connections[0].connection_id

        pin = generate_pin()
        payload = PairRequestPayload(
            device_id=self._identity.device_id,
            device_name=self._identity.device_name,
            pin=pin,
        )
        sent = await self._manager.send(connection_id, Message.build(MessageType.PAIR_REQUEST, payload))
        if sent:
            self.outgoing = {"connection_id": connection_id, "pin": pin}
            await self._emit("pairing_started", dict(self.outgoing))
        return sent

    async def handle_pair_response(self, connection_id: str, message: Message) -> None:
        if self._manager.mode != P2PMode.CLIENT:
            return
        if self.outgoing is None or self.outgoing["connection_id"] != connection_id:
            logger.warning(f"Unsolicited pair_response from {connection_id}, ignoring")
            return

        payload = PairResponsePayload.model_validate(message.payload or {})
        self.outgoing = None

        if not payload.accepted:
            logger.info("Pairing was rejected by the controller")
            await self._emit("pairing_rejected", {"connection_id": connection_id})
            return

        await self._manager.mark_paired(connection_id, payload.device_name)
        connection = self._manager.get_connection(connection_id)
        if payload.device_id and connection is not None:
            known = self._trust_store.get(payload.device_id) is not None
            self._trust_store.add_trusted_peer(
                payload.device_id,
                payload.device_name or connection.peer_address.ip,
                last_address=connection.peer_address,
                auto_connect=None if known else self._auto_connect,
            )
        logger.info(f"Paired with controller {payload.device_name} ({payload.device_id})")
        await self._emit("paired", {
            "connection_id": connection_id,
            "device_id": payload.device_id,
            "device_name": payload.device_name,
        })

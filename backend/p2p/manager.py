"""
Connection manager: owns the P2P mode and every live session.

Server mode runs the peer listener and accepts any number of inbound
sessions; client mode holds at most one outbound session to a controller.
Mode switches bump a generation counter before tearing anything down, so
frames still in flight from the old mode's sessions are dropped instead of
being routed.
"""

import asyncio
import logging
import uuid

import websockets
from websockets.exceptions import ConnectionClosedError, InvalidHandshake, InvalidURI

from config import CONNECT_TIMEOUT, MAX_RETRIES, P2P_HOST, P2P_PORT, RETRY_DELAY
from p2p.events import EventEmitter
from p2p.models import Connection, ConnectionStatus, P2PMode, PeerAddress
from p2p.protocol import Message, ProtocolError, decode_message, encode_message
from p2p.server import PeerServer, create_peer_app
from p2p.transport import ClientSession

logger = logging.getLogger(__name__)


class ConnectionManager(EventEmitter):
    """Mode state machine plus the table of live connections."""

    def __init__(
        self,
        identity,
        router,
        host: str = P2P_HOST,
        port: int = P2P_PORT,
        connect_timeout: float = CONNECT_TIMEOUT,
        server_factory=None,
        connector=None,
    ) -> None:
        super().__init__()
        self._identity = identity
        self._router = router
        self._host = host
        self._port = port
        self._connect_timeout = connect_timeout
        # server_factory: fn(manager) -> object with async start()/stop()
        self._server_factory = server_factory or self._default_server
        # connector: async fn(uri, timeout) -> websockets-style connection
        self._connector = connector or self._default_connect

        self.mode = P2PMode.OFF
        self.status = ConnectionStatus.DISCONNECTED
        self.selected_connection_id: str | None = None

        self._connections: dict[str, Connection] = {}
        self._sessions: dict[str, object] = {}
        self._generation = 0
        self._mode_lock = asyncio.Lock()
        self._server = None
        self._client_task: asyncio.Task | None = None

    # --- Properties ---

    @property
    def server_port(self) -> int:
        return self._port

    @server_port.setter
    def server_port(self, port: int) -> None:
        # Takes effect the next time server mode starts
        self._port = port

    @property
    def server_running(self) -> bool:
        return self._server is not None

    @property
    def role(self) -> str:
        return "controller" if self.mode == P2PMode.SERVER else "player"

    def get_connections(self) -> list[Connection]:
        return list(self._connections.values())

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def is_paired(self, connection_id: str) -> bool:
        connection = self._connections.get(connection_id)
        return connection is not None and connection.paired

    async def mark_paired(self, connection_id: str, device_name: str | None = None) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.paired = True
        if device_name:
            connection.device_name = device_name
        await self._emit("connection_updated", connection.model_dump(mode="json"))

    # --- Mode switching ---

    async def set_mode(self, mode: P2PMode) -> None:
        """Tear down the current mode, then enter ``mode``."""
        mode = P2PMode(mode)
        async with self._mode_lock:
            if mode == self.mode and not (mode == P2PMode.SERVER and self._server is None):
                return

            previous = self.mode
            self._generation += 1
            await self._teardown()
            self.mode = mode
            logger.info(f"P2P mode {previous.value} -> {mode.value}")

            if mode == P2PMode.SERVER:
                await self._start_server()

        await self._emit("mode_changed", {"mode": self.mode.value, "previous": previous.value})

    async def start_server(self, port: int | None = None) -> bool:
        """Enter server mode, optionally on a new port. Returns True if listening."""
        if port is not None and port != self._port:
            self._port = port
            if self.mode == P2PMode.SERVER:
                await self.stop_server()
        await self.set_mode(P2PMode.SERVER)
        return self._server is not None

    async def stop_server(self) -> None:
        """Stop listening and close every inbound session."""
        async with self._mode_lock:
            if self.mode != P2PMode.SERVER:
                return
            self._generation += 1
            await self._teardown()
            self.mode = P2PMode.OFF
        await self._emit("mode_changed", {"mode": self.mode.value, "previous": P2PMode.SERVER.value})

    async def _start_server(self) -> None:
        server = self._server_factory(self)
        try:
            await server.start()
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to start peer listener on port {self._port}: {e}")
            await self._set_status(ConnectionStatus.ERROR)
            return
        self._server = server
        # Listening counts as connected to the network
        await self._set_status(ConnectionStatus.CONNECTED)

    async def _teardown(self) -> None:
        """Close everything the current mode holds. Caller holds the mode lock."""
        if self._client_task is not None:
            self._client_task.cancel()
            try:
                await self._client_task
            except (asyncio.CancelledError, Exception):
                pass
            self._client_task = None

        # Detach first so accept_session refuses new sessions during teardown
        server, self._server = self._server, None
        await self._close_all_sessions()
        if server is not None:
            await server.stop()

        self.selected_connection_id = None
        await self._set_status(ConnectionStatus.DISCONNECTED)

    async def _close_all_sessions(self) -> None:
        for connection_id in list(self._connections):
            await self.close_connection(connection_id)

    # --- Server side sessions ---

    async def accept_session(self, session, host: str, port: int) -> Connection | None:
        """Register an inbound session. Returns None (and closes it) if not serving."""
        if self.mode != P2PMode.SERVER or self._server is None:
            logger.info(f"Refusing session from {host}: not in server mode")
            await session.close(code=1013)
            return None

        connection = Connection(
            connection_id=uuid.uuid4().hex,
            peer_address=PeerAddress(ip=host, port=port),
            generation=self._generation,
        )
        self._connections[connection.connection_id] = connection
        self._sessions[connection.connection_id] = session
        logger.info(f"New connection {connection.connection_id} from {host}:{port}")
        await self._emit("connection_opened", connection.model_dump(mode="json"))
        return connection

    # --- Client side session ---

    async def connect_to_server(self, ip: str, port: int) -> bool:
        """
        Open the single outbound session to a controller.

        Switches to client mode first if needed (stopping the server). Any
        previous outbound session is abandoned. Returns True once connected.
        """
        if self.mode != P2PMode.CLIENT:
            await self.set_mode(P2PMode.CLIENT)

        async with self._mode_lock:
            if self.mode != P2PMode.CLIENT:
                return False

            # Abandon any prior connecting/connected session
            self._generation += 1
            if self._client_task is not None:
                self._client_task.cancel()
                self._client_task = None
            await self._close_all_sessions()
            generation = self._generation

            await self._set_status(ConnectionStatus.CONNECTING)
            uri = f"ws://{ip}:{port}/ws"
            logger.info(f"Connecting to {uri}")
            try:
                raw_conn = await self._connector(uri, self._connect_timeout)
            except (OSError, asyncio.TimeoutError, InvalidURI, InvalidHandshake) as e:
                logger.warning(f"Connection to {uri} failed: {e}")
                await self._set_status(ConnectionStatus.ERROR)
                return False

            session = ClientSession(raw_conn)
            connection = Connection(
                connection_id=uuid.uuid4().hex,
                peer_address=PeerAddress(ip=ip, port=port),
                generation=generation,
            )
            self._connections[connection.connection_id] = connection
            self._sessions[connection.connection_id] = session
            self._client_task = asyncio.create_task(
                self._client_reader(connection.connection_id, session, generation)
            )
            await self._set_status(ConnectionStatus.CONNECTED)

        await self._emit("connection_opened", connection.model_dump(mode="json"))
        return True

    async def connect_with_retry(
        self, ip: str, port: int, retries: int = MAX_RETRIES, delay: float = RETRY_DELAY
    ) -> bool:
        """connect_to_server with bounded exponential backoff."""
        for attempt in range(retries + 1):
            if await self.connect_to_server(ip, port):
                return True
            if attempt < retries:
                wait = delay * (2 ** attempt)
                logger.info(f"Retrying connection to {ip}:{port} in {wait}s ({attempt + 1}/{retries})")
                await asyncio.sleep(wait)
        logger.error(f"Giving up on {ip}:{port} after {retries + 1} attempts")
        return False

    async def _client_reader(self, connection_id: str, session: ClientSession, generation: int) -> None:
        """Read frames from the controller until the session ends."""
        clean = True
        try:
            async for raw in session.receive():
                await self.handle_inbound(connection_id, raw)
        except ConnectionClosedError as e:
            logger.warning(f"Connection to server lost: {e}")
            clean = False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Client session error: {e}")
            clean = False
        finally:
            if generation == self._generation:
                self._client_task = None
                await self.close_connection(connection_id)
                await self._set_status(
                    ConnectionStatus.DISCONNECTED if clean else ConnectionStatus.ERROR
                )

    async def disconnect(self) -> None:
        """Close the outbound session (client mode) and reset status."""
        async with self._mode_lock:
            if self.mode != P2PMode.CLIENT:
                return
            self._generation += 1
            await self._teardown()

    # --- Message flow ---

    async def handle_inbound(self, connection_id: str, raw: str | bytes) -> None:
        """Decode a frame and hand it to the router, unless its session is stale."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.generation != self._generation:
            logger.debug(f"Dropping frame from stale connection {connection_id}")
            return

        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Protocol error from {connection_id}: {e}")
            return

        await self._router.dispatch(connection_id, message)

    async def send(self, connection_id: str, message: Message) -> bool:
        """Send one message on one session. Returns False if it could not be sent."""
        session = self._sessions.get(connection_id)
        if session is None:
            logger.debug(f"No session {connection_id} for '{message.type}'")
            return False
        try:
            await session.send_text(encode_message(message))
            return True
        except Exception as e:
            logger.warning(f"Send '{message.type}' to {connection_id} failed: {e}")
            return False

    def select_connection(self, connection_id: str | None) -> bool:
        if connection_id is not None and connection_id not in self._connections:
            return False
        self.selected_connection_id = connection_id
        return True

    async def send_to_player(self, message: Message) -> bool:
        """Server mode: send to the selected player (or the only one)."""
        if self.mode != P2PMode.SERVER:
            return False
        target = self.selected_connection_id
        if target is None and len(self._connections) == 1:
            target = next(iter(self._connections))
        if target is None:
            logger.warning(f"No player selected for '{message.type}'")
            return False
        return await self.send(target, message)

    async def send_to_server(self, message: Message) -> bool:
        """Client mode: send on the outbound session."""
        if self.mode != P2PMode.CLIENT or self.status != ConnectionStatus.CONNECTED:
            return False
        connection_id = next(iter(self._connections), None)
        if connection_id is None:
            return False
        return await self.send(connection_id, message)

    async def broadcast(self, message: Message) -> int:
        """Send to every live session. Returns how many sends succeeded."""
        sent = 0
        for connection_id in list(self._sessions):
            if await self.send(connection_id, message):
                sent += 1
        return sent

    async def close_connection(self, connection_id: str) -> None:
        """Close and forget a session. Safe to call more than once."""
        connection = self._connections.pop(connection_id, None)
        session = self._sessions.pop(connection_id, None)
        if session is not None:
            await session.close()
        if connection is None:
            return

        if self.selected_connection_id == connection_id:
            self.selected_connection_id = None
        logger.info(f"Connection {connection_id} closed")
        await self._emit("connection_closed", {"connection_id": connection_id})

    # --- Internals ---

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        await self._emit("status_changed", {"status": status.value, "mode": self.mode.value})

    def _default_server(self, manager) -> PeerServer:
        app = create_peer_app(manager, self._identity)
        return PeerServer(app, self._host, self._port)

    @staticmethod
    async def _default_connect(uri: str, timeout: float):
        return await websockets.connect(uri, open_timeout=timeout)

"""
Peer listener used in server (controller) mode.

Serves the HTTP discovery responder and the message websocket on the
configured P2P port. Runs as an embedded uvicorn server on the same event
loop as the rest of the node so it can be started and stopped whenever the
operator switches mode.
"""

import asyncio
import contextlib
import logging
import socket

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from discovery.models import DiscoverResponse
from p2p.transport import ServerSession

logger = logging.getLogger(__name__)


def create_peer_app(manager, identity) -> FastAPI:
    """Build the ASGI app served to players on the LAN."""
    app = FastAPI(title="Zenith Link peer listener", docs_url=None, redoc_url=None)

    # Browser-based players probe /api/discover cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/api/discover")
    async def discover():
        info = DiscoverResponse(
            role="controller",
            device_id=identity.device_id,
            device_name=identity.device_name,
            port=manager.server_port,
        )
        return info.to_wire()

    @app.websocket("/ws")
    async def peer_socket(websocket: WebSocket):
        await websocket.accept()
        session = ServerSession(websocket)
        host, port = websocket.client if websocket.client else ("unknown", 0)

        connection = await manager.accept_session(session, host, port)
        if connection is None:
            return

        try:
            while True:
                raw = await websocket.receive_text()
                await manager.handle_inbound(connection.connection_id, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            # receive after a local close lands here as well
            logger.debug(f"Peer socket {connection.connection_id} ended: {e}")
        finally:
            await manager.close_connection(connection.connection_id)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host app."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class PeerServer:
    """Owns the listening socket and the uvicorn task for one server-mode run."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """
        Bind and start serving.

        Raises:
            OSError: the port could not be bound.
            RuntimeError: uvicorn exited during startup.
        """
        # Bind ourselves so a busy port surfaces as OSError instead of uvicorn's exit
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, self._port))
        except OSError:
            sock.close()
            raise

        config = uvicorn.Config(
            self._app,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=2,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                sock.close()
                raise RuntimeError(f"Peer listener exited during startup on port {self._port}")
            await asyncio.sleep(0.05)

        logger.info(f"Peer listener serving on {self._host}:{self._port}")

    async def stop(self) -> None:
        """Stop accepting connections and wait for uvicorn to exit."""
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._server.force_exit = True
            self._task.cancel()
        except Exception as e:
            logger.warning(f"Peer listener stopped with error: {e}")
        finally:
            self._server = None
            self._task = None
        logger.info("Peer listener stopped")

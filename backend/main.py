"""
Zenith Link: FastAPI application entry point.

Builds the peer node on startup, serves the local control API and the
``/events`` WebSocket, and stops the node (and any peer listener) on
shutdown.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.websocket import EventHub
from config import API_HOST, API_PORT, CONFIG_DIR
from p2p.node import PeerNode

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(config_dir: Path = CONFIG_DIR, node: PeerNode | None = None) -> FastAPI:
    """Build the control app around a PeerNode (created here unless given)."""
    node = node or PeerNode(config_dir)
    hub = EventHub(snapshot=node.status)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop the peer node."""
        logger.info("Starting Zenith Link services...")
        try:
            node.on_event(hub.broadcast)
            await node.start()
            logger.info(
                f"Zenith Link ready: API {API_HOST}:{API_PORT}, "
                f"peer port {node.manager.server_port}"
            )
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down Zenith Link services...")
            await node.stop()

    app = FastAPI(title="Zenith Link", version="1.0.0", lifespan=lifespan)
    app.state.node = node
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.websocket("/events")
    async def events_endpoint(websocket: WebSocket):
        await hub.connect(websocket)
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.debug(f"UI socket ended: {e}")
        finally:
            hub.disconnect(websocket)

    return app


def run() -> None:
    import uvicorn

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()

"""FastAPI application serving the chat relay over a WebSocket."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import ServerSettings, load_config
from .hub import ChatHub
from .store import FailoverStore, build_store

logger = logging.getLogger("chat_relay.server")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[FailoverStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    settings = ServerSettings.from_config(cfg)
    logging.basicConfig(level=settings.log_level)

    # Services
    store = store or build_store(cfg)
    hub = ChatHub(store, history_limit=settings.history_limit)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # A store that cannot reach either backend aborts startup.
        await store.initialize()
        logger.info("Chat relay ready (store: %s)", store.active_name)
        try:
            yield
        finally:
            await store.close()
            logger.info("Chat relay stopped")

    app = FastAPI(title="Chat Relay", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.hub = hub

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, **store.describe(), "connections": len(hub.connections)}

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        await hub.connect(websocket)
        try:
            while True:
                # text and binary frames both go to the hub, which rejects non-JSON
                msg = await websocket.receive()
                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(msg.get("code", 1000))
                raw = msg.get("text")
                if raw is None:
                    raw = msg.get("bytes") or b""
                await hub.handle_frame(websocket, raw)
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(websocket)

    return app

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from coordinator import Coordinator
import json
import asyncio
from typing import Any, Dict, Optional
from constants import CORS_ORIGINS, LOG_LEVEL, LOG_FILE
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


class WebSocketConnection:
    """Outbound queue for one control connection.

    The coordinator enqueues with ``send`` (never blocks); ``pump`` drains the queue onto the
    socket in order. A ``None`` sentinel stops the pump.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.queue.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def pump(self, client_id: str):
        sent_count = 0
        while True:
            message = await self.queue.get()
            if message is None:
                break
            try:
                await self.websocket.send_text(json.dumps(message))
                sent_count += 1
            except Exception as e:
                # Socket went away mid-send; the receive loop handles cleanup
                logger.warning(f"Error sending to connection {client_id}: {e}")
                self.closed = True
                break
        logger.debug(f"Writer for connection {client_id} stopped after {sent_count} messages")


def create_app(coordinator: Optional[Coordinator] = None) -> FastAPI:
    coordinator = coordinator if coordinator is not None else Coordinator()

    app = FastAPI(title="Screen share coordinator")
    app.state.coordinator = coordinator

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Control connection: JSON envelopes ``{type, payload}`` in both directions."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        client_id = coordinator.connect(connection)
        writer = asyncio.create_task(connection.pump(client_id))
        logger.info(f"WebSocket connection accepted for client {client_id}")

        message_count = 0
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                # Text and binary frames are both accepted; the router drops what it cannot parse
                data = message.get("text")
                if data is None:
                    data = message.get("bytes") or b""
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {client_id}")
                coordinator.route(client_id, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {client_id}")
        except Exception as e:
            logger.error(f"Error receiving message from connection {client_id}: {e}", exc_info=True)
        finally:
            coordinator.disconnect(client_id)
            connection.close()
            try:
                await writer
            except Exception as e:
                logger.debug(f"Writer for connection {client_id} ended with error: {e}")
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()

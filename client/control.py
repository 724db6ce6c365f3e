"""
Headless room client.

Keeps the control connection to the coordinator, tracks room state (own id, room id, host
flag, peers, pending join requests) and feeds negotiation traffic to the
``PeerNegotiationOrchestrator``.

Usage:
    client = RoomClient("ws://localhost:8000/ws", media_sink=sink)
    await client.connect()
    runner = asyncio.create_task(client.run())
    await client.create_room("Ann")
    ...
    await client.start_sharing(LocalMediaSession([track]))
"""

import asyncio
import json
from typing import Any, Callable, Coroutine, Dict, Optional, Set

import websockets

from client.media import AiortcTransport, LocalMediaSession, MediaSink, MediaTransport
from client.negotiation import FailureCallback, PeerNegotiationOrchestrator
from constants import NEGOTIATION_TIMEOUT, SIGNALING_URL
from logging_config import get_logger
from schemas.messages import (
    CursorUpdateMessage,
    ErrorMessage,
    ExistingPeersMessage,
    HostLeftMessage,
    InboundType,
    JoinedMessage,
    JoinRequestNoticeMessage,
    MalformedMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    RelayedSignalMessage,
    RoomCreatedMessage,
    UnknownMessageType,
    parse_outbound,
)

logger = get_logger(__name__)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class RoomClient:
    def __init__(
        self,
        url: str = SIGNALING_URL,
        media_sink: Optional[MediaSink] = None,
        transport_factory: Callable[[], MediaTransport] = AiortcTransport,
        on_error: Optional[Callable[[str], None]] = None,
        on_failure: Optional[FailureCallback] = None,
        negotiation_timeout: Optional[float] = NEGOTIATION_TIMEOUT,
    ):
        self.url = url
        self.websocket = None
        self.client_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.is_host = False
        self.peers: Dict[str, Optional[str]] = {}
        self.requests: Dict[str, Optional[str]] = {}
        self.media_sink = media_sink
        self._on_error = on_error
        self._tasks: Set[asyncio.Task] = set()
        self.orchestrator = PeerNegotiationOrchestrator(
            send_signal=self.send_signal,
            transport_factory=transport_factory,
            media_sink=media_sink,
            on_failure=on_failure,
            negotiation_timeout=negotiation_timeout,
        )
        self._handlers = {
            RoomCreatedMessage: self._on_room_created,
            JoinedMessage: self._on_joined,
            JoinRequestNoticeMessage: self._on_join_request,
            PeerJoinedMessage: self._on_peer_joined,
            ExistingPeersMessage: self._on_existing_peers,
            PeerLeftMessage: self._on_peer_left,
            HostLeftMessage: self._on_host_left,
            RelayedSignalMessage: self._on_signal,
            CursorUpdateMessage: self._on_cursor_update,
            ErrorMessage: self._on_error_message,
        }

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self):
        self.websocket = await websockets.connect(self.url)
        logger.info(f"Connected to signaling server at {self.url}")

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await self.orchestrator.stop_sharing()
        await self.orchestrator.close_all()
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None

    async def run(self):
        """Process server messages until the control connection closes."""
        try:
            async for raw in self.websocket:
                await self.handle_message(raw)
        except websockets.ConnectionClosed as e:
            logger.info(f"Control connection closed: {e}")
        finally:
            await self.orchestrator.close_all()
            self._leave_room()

    async def send(self, kind: InboundType, payload: Dict[str, Any]):
        if self.websocket is None:
            raise ConnectionError("Not connected to the signaling server")
        await self.websocket.send(json.dumps({"type": kind.value, "payload": payload}))

    # ------------------------------------------------------------------
    # Outbound actions
    # ------------------------------------------------------------------

    async def create_room(self, name: str):
        await self.send(InboundType.CREATE_ROOM, {"name": name})

    async def join_room(self, room_id: str, name: str):
        await self.send(InboundType.JOIN_REQUEST, {"roomId": room_id, "name": name})

    async def approve_join(self, target_client_id: str):
        await self.send(InboundType.APPROVE_JOIN, {"targetClientId": target_client_id})
        self.requests.pop(target_client_id, None)

    async def reject_join(self, target_client_id: str):
        await self.send(InboundType.REJECT_JOIN, {"targetClientId": target_client_id})
        self.requests.pop(target_client_id, None)

    async def send_signal(self, target: str, signal: Dict[str, Any]):
        await self.send(InboundType.SIGNAL, {"target": target, "signal": signal})

    async def send_cursor(self, x: float, y: float):
        await self.send(InboundType.CURSOR_MOVE, {"position": {"x": _clamp(x), "y": _clamp(y)}})

    async def start_sharing(self, media: LocalMediaSession):
        # Capture revoked by the user ends sharing the same way as an explicit stop
        media.add_ended_listener(lambda: self._spawn(self.stop_sharing()))
        await self.orchestrator.start_sharing(media)

    async def stop_sharing(self):
        await self.orchestrator.stop_sharing()

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task failed: {error}", exc_info=error)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw):
        try:
            message = parse_outbound(raw)
        except UnknownMessageType as e:
            logger.info(f"Ignoring server message: {e}")
            return
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed server message: {e}")
            return
        logger.debug(f"Handling {message.type}")
        await self._handlers[type(message)](message.payload)

    async def _on_room_created(self, payload):
        self.room_id = payload.room_id
        self.client_id = payload.client_id
        self.is_host = True
        logger.info(f"Created room {self.room_id} as {self.client_id}")

    async def _on_joined(self, payload):
        self.room_id = payload.room_id
        self.client_id = payload.client_id
        self.is_host = payload.is_host
        logger.info(f"Joined room {self.room_id} as {self.client_id}")

    async def _on_join_request(self, payload):
        self.requests[payload.client_id] = payload.name
        logger.info(f"Join request from {payload.name} ({payload.client_id})")

    async def _on_peer_joined(self, payload):
        self.peers[payload.client_id] = payload.name
        await self.orchestrator.peer_joined(payload.client_id, payload.name)

    async def _on_existing_peers(self, payload):
        for peer in payload.peers:
            self.peers[peer.id] = peer.name
        await self.orchestrator.existing_peers(payload.peers)

    async def _on_peer_left(self, payload):
        self.peers.pop(payload.client_id, None)
        await self.orchestrator.peer_left(payload.client_id)

    async def _on_host_left(self, payload):
        logger.info(f"Host left room {self.room_id}")
        await self.orchestrator.close_all()
        self._leave_room()

    async def _on_signal(self, payload):
        await self.orchestrator.handle_signal(payload.sender, payload.signal)

    async def _on_cursor_update(self, payload):
        if self.media_sink is not None:
            self.media_sink.update_cursor(payload.client_id, payload.position.x, payload.position.y)

    async def _on_error_message(self, payload):
        logger.warning(f"Server error: {payload.message}")
        if self._on_error is not None:
            self._on_error(payload.message)

    def _leave_room(self):
        self.room_id = None
        self.is_host = False
        self.peers.clear()
        self.requests.clear()

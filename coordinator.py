"""
Room coordination and message routing.

``Coordinator`` owns the connection and room registries and is the single place they are
mutated. Every public method takes the same lock and never awaits while holding it; outbound
messages are handed to each connection's non-blocking ``send`` in the order they are produced,
so per-recipient ordering follows routing order.
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Union

from backend import ClientIdentity, Connection, ConnectionRegistry, RoomAllocationError, RoomRegistry
from constants import DEFAULT_GUEST_NAME, DEFAULT_HOST_NAME
from logging_config import get_logger
from schemas.messages import (
    CreateRoomPayload,
    CursorMovePayload,
    CursorUpdatePayload,
    ErrorPayload,
    ExistingPeersPayload,
    InboundMessage,
    InboundType,
    JoinedPayload,
    JoinRequestNoticePayload,
    JoinRequestPayload,
    MalformedMessage,
    OutboundType,
    PeerInfo,
    PeerJoinedPayload,
    PeerLeftPayload,
    RelayedSignalPayload,
    RoomCreatedPayload,
    SignalPayload,
    TargetClientPayload,
    UnknownMessageType,
    envelope,
    parse_inbound,
)

logger = get_logger(__name__)


class ProtocolError(Exception):
    """Request is well-formed but not valid in the current state; reported to the sender."""


class Coordinator:
    def __init__(
        self,
        connections: Optional[ConnectionRegistry] = None,
        rooms: Optional[RoomRegistry] = None,
    ):
        self.connections = connections if connections is not None else ConnectionRegistry()
        self.rooms = rooms if rooms is not None else RoomRegistry()
        self.dropped_signals = 0
        self._lock = threading.Lock()
        self._handlers: Dict[str, Callable[[ClientIdentity, Any], None]] = {
            InboundType.CREATE_ROOM.value: self._create_room,
            InboundType.JOIN_REQUEST.value: self._join_request,
            InboundType.APPROVE_JOIN.value: self._approve_join,
            InboundType.REJECT_JOIN.value: self._reject_join,
            InboundType.SIGNAL.value: self._signal,
            InboundType.CURSOR_MOVE.value: self._cursor_move,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, connection: Connection) -> str:
        with self._lock:
            client_id = self.connections.register(connection)
        logger.info(f"Client connected: {client_id}")
        return client_id

    def disconnect(self, client_id: str):
        """Drop a client. Safe to call more than once for the same id."""
        with self._lock:
            client = self.connections.remove(client_id)
            if client is None:
                logger.debug(f"Disconnect for unknown or already removed client {client_id}, ignoring")
                return
            logger.info(f"Client disconnected: {client_id}")

            room_id = client.room_id
            if room_id is None:
                return
            if not self.rooms.is_member(room_id, client_id):
                logger.info(f"Dropped pending join request from {client_id} for room {room_id}")
                return

            if self.rooms.room_host(room_id) == client_id:
                remaining = self.rooms.room_members(room_id) - {client_id}
                pending = [c for c in self.connections.bound_to(room_id) if c.id not in remaining]
                self.rooms.remove_member(room_id, client_id)
                logger.info(f"Host {client_id} left room {room_id}, closing it ({len(remaining)} members notified)")
                for member_id in remaining:
                    self._send(member_id, envelope(OutboundType.HOST_LEFT))
                    self.connections.clear_room(member_id)
                for requester in pending:
                    self.connections.clear_room(requester.id)
                    self._send_error(requester.id, "Room was closed by the host")
            else:
                self.rooms.remove_member(room_id, client_id)
                logger.info(f"Peer {client_id} left room {room_id}")
                self._broadcast(room_id, envelope(OutboundType.PEER_LEFT, PeerLeftPayload(client_id=client_id)))

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, sender_id: str, raw: Union[str, bytes, Dict[str, Any]]):
        """Parse and dispatch one inbound frame. Bad input is logged and dropped."""
        try:
            message = parse_inbound(raw)
        except UnknownMessageType as e:
            logger.info(f"Ignoring message from {sender_id}: {e}")
            return
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message from {sender_id}: {e}")
            return
        self.dispatch(sender_id, message)

    def dispatch(self, sender_id: str, message: InboundMessage):
        handler = self._handlers[message.type]
        with self._lock:
            sender = self.connections.get(sender_id)
            if sender is None:
                logger.debug(f"Message {message.type} from unregistered client {sender_id}, ignoring")
                return
            logger.debug(f"Routing {message.type} from {sender_id}")
            try:
                handler(sender, message.payload)
            except ProtocolError as e:
                logger.info(f"Rejected {message.type} from {sender_id}: {e}")
                self._send_error(sender_id, str(e))

    # ------------------------------------------------------------------
    # Handlers (called with the lock held)
    # ------------------------------------------------------------------

    def _create_room(self, sender: ClientIdentity, payload: CreateRoomPayload):
        if sender.room_id is not None:
            raise ProtocolError("Already in a room")
        try:
            room_id = self.rooms.create_room(sender.id)
        except RoomAllocationError as e:
            logger.error(f"Room creation failed for {sender.id}: {e}")
            raise ProtocolError("Could not create room") from e
        self.connections.set_room(sender.id, room_id, payload.name or DEFAULT_HOST_NAME)
        self._send(sender.id, envelope(
            OutboundType.ROOM_CREATED,
            RoomCreatedPayload(room_id=room_id, client_id=sender.id),
        ))

    def _join_request(self, sender: ClientIdentity, payload: JoinRequestPayload):
        if sender.room_id is not None and self.rooms.is_member(sender.room_id, sender.id):
            raise ProtocolError("Already in a room")
        host_id = self.rooms.room_host(payload.room_id)
        if host_id is None:
            raise ProtocolError("Room not found")
        if sender.room_id is not None and sender.room_id != payload.room_id:
            logger.info(f"Client {sender.id} replaced pending request for {sender.room_id} with {payload.room_id}")
        self.connections.set_room(sender.id, payload.room_id, payload.name or DEFAULT_GUEST_NAME)
        self._send(host_id, envelope(
            OutboundType.JOIN_REQUEST,
            JoinRequestNoticePayload(client_id=sender.id, name=sender.name),
        ))

    def _approve_join(self, sender: ClientIdentity, payload: TargetClientPayload):
        room_id = self._hosted_room(sender, "Only the host can approve join requests")
        target = self._pending_target(room_id, payload.target_client_id)

        # Snapshot taken before the target becomes a member
        peers = [
            PeerInfo(id=member_id, name=self._name_of(member_id))
            for member_id in self.rooms.room_members(room_id)
        ]
        self.rooms.add_member(room_id, target.id)
        logger.info(f"Host {sender.id} approved {target.id} into room {room_id}")

        # Target's own confirmation and snapshot go out before any peer_joined fan-out
        self._send(target.id, envelope(
            OutboundType.JOINED,
            JoinedPayload(room_id=room_id, client_id=target.id, is_host=False),
        ))
        self._send(target.id, envelope(OutboundType.EXISTING_PEERS, ExistingPeersPayload(peers=peers)))
        self._broadcast(
            room_id,
            envelope(OutboundType.PEER_JOINED, PeerJoinedPayload(client_id=target.id, name=target.name)),
            exclude=target.id,
        )

    def _reject_join(self, sender: ClientIdentity, payload: TargetClientPayload):
        room_id = self._hosted_room(sender, "Only the host can reject join requests")
        target = self._pending_target(room_id, payload.target_client_id)
        self.connections.clear_room(target.id)
        logger.info(f"Host {sender.id} rejected {target.id} from room {room_id}")
        self._send_error(target.id, "Host rejected your request")

    def _signal(self, sender: ClientIdentity, payload: SignalPayload):
        if payload.target not in self.connections:
            self.dropped_signals += 1
            logger.info(
                f"Dropping signal from {sender.id} to unknown target {payload.target} "
                f"(dropped so far: {self.dropped_signals})"
            )
            return
        self._send(payload.target, envelope(
            OutboundType.SIGNAL,
            RelayedSignalPayload(sender=sender.id, signal=payload.signal),
        ))

    def _cursor_move(self, sender: ClientIdentity, payload: CursorMovePayload):
        if sender.room_id is None or not self.rooms.is_member(sender.room_id, sender.id):
            logger.debug(f"Cursor update from {sender.id} outside any room, ignoring")
            return
        self._broadcast(
            sender.room_id,
            envelope(OutboundType.CURSOR_UPDATE, CursorUpdatePayload(client_id=sender.id, position=payload.position)),
            exclude=sender.id,
        )

    def _hosted_room(self, sender: ClientIdentity, message: str) -> str:
        if sender.room_id is None or self.rooms.room_host(sender.room_id) != sender.id:
            raise ProtocolError(message)
        return sender.room_id

    def _pending_target(self, room_id: str, target_id: str) -> ClientIdentity:
        target = self.connections.get(target_id)
        if target is None or target.room_id != room_id or self.rooms.is_member(room_id, target_id):
            raise ProtocolError("No pending join request from that client")
        return target

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _name_of(self, client_id: str) -> Optional[str]:
        client = self.connections.get(client_id)
        return client.name if client else None

    def _send(self, client_id: str, message: Dict[str, Any]) -> bool:
        client = self.connections.get(client_id)
        if client is None:
            return False
        try:
            client.connection.send(message)
            return True
        except Exception as e:
            logger.warning(f"Error sending {message.get('type')} to {client_id}: {e}")
            return False

    def _send_error(self, client_id: str, text: str):
        self._send(client_id, envelope(OutboundType.ERROR, ErrorPayload(message=text)))

    def _broadcast(self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None) -> int:
        sent = 0
        for member_id in self.rooms.room_members(room_id):
            if member_id != exclude and self._send(member_id, message):
                sent += 1
        logger.debug(f"Broadcast {message.get('type')} to {sent} member(s) of room {room_id}")
        return sent

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "connections": len(self.connections),
                "rooms": len(self.rooms),
                "dropped_signals": self.dropped_signals,
            }

    def room_details(self, room_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            room = self.rooms.get(room_id)
            if room is None:
                return None
            members: List[Dict[str, Any]] = [
                {"id": member_id, "name": self._name_of(member_id), "is_host": member_id == room.host_id}
                for member_id in sorted(room.members)
            ]
            pending = [c for c in self.connections.bound_to(room_id) if c.id not in room.members]
            return {
                "room_id": room.id,
                "host_id": room.host_id,
                "host_name": self._name_of(room.host_id),
                "member_count": len(room.members),
                "members": members,
                "pending_count": len(pending),
            }

"""
Control-channel message schemas.

Every frame on the control connection is a JSON envelope ``{"type": ..., "payload": {...}}``.
Inbound (client -> server) and outbound (server -> client) kinds are closed sets; each kind
has its own payload model so that malformed input is rejected at the parse boundary.
"""

import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class MalformedMessage(ValueError):
    """Frame is not valid JSON or its payload does not match the schema for its kind."""


class UnknownMessageType(ValueError):
    """Frame is well-formed JSON but names a kind this side does not handle."""

    def __init__(self, kind: Any):
        super().__init__(f"Unknown message type: {kind!r}")
        self.kind = kind


class InboundType(str, Enum):
    CREATE_ROOM = "create_room"
    JOIN_REQUEST = "join_request"
    APPROVE_JOIN = "approve_join"
    REJECT_JOIN = "reject_join"
    SIGNAL = "signal"
    CURSOR_MOVE = "cursor_move"


class OutboundType(str, Enum):
    ROOM_CREATED = "room_created"
    JOINED = "joined"
    JOIN_REQUEST = "join_request"
    PEER_JOINED = "peer_joined"
    EXISTING_PEERS = "existing_peers"
    PEER_LEFT = "peer_left"
    HOST_LEFT = "host_left"
    SIGNAL = "signal"
    CURSOR_UPDATE = "cursor_update"
    ERROR = "error"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Shared
# ============================================================================

class Position(_Payload):
    """Cursor position normalized to the sender's own view."""
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)


class PeerInfo(_Payload):
    id: str
    name: Optional[str] = None


# ============================================================================
# Client -> Server
# ============================================================================

class CreateRoomPayload(_Payload):
    name: Optional[str] = None


class JoinRequestPayload(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1)
    name: Optional[str] = None


class TargetClientPayload(_Payload):
    target_client_id: str = Field(..., alias="targetClientId", min_length=1)


class SignalPayload(_Payload):
    target: str = Field(..., min_length=1)
    signal: Dict[str, Any]


class CursorMovePayload(_Payload):
    position: Position


class CreateRoomMessage(BaseModel):
    type: Literal["create_room"]
    payload: CreateRoomPayload = Field(default_factory=CreateRoomPayload)


class JoinRequestMessage(BaseModel):
    type: Literal["join_request"]
    payload: JoinRequestPayload


class ApproveJoinMessage(BaseModel):
    type: Literal["approve_join"]
    payload: TargetClientPayload


class RejectJoinMessage(BaseModel):
    type: Literal["reject_join"]
    payload: TargetClientPayload


class SignalMessage(BaseModel):
    type: Literal["signal"]
    payload: SignalPayload


class CursorMoveMessage(BaseModel):
    type: Literal["cursor_move"]
    payload: CursorMovePayload


InboundMessage = Annotated[
    Union[
        CreateRoomMessage,
        JoinRequestMessage,
        ApproveJoinMessage,
        RejectJoinMessage,
        SignalMessage,
        CursorMoveMessage,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


# ============================================================================
# Server -> Client
# ============================================================================

class RoomCreatedPayload(_Payload):
    room_id: str = Field(..., alias="roomId")
    client_id: str = Field(..., alias="clientId")


class JoinedPayload(_Payload):
    room_id: str = Field(..., alias="roomId")
    client_id: str = Field(..., alias="clientId")
    is_host: bool = Field(..., alias="isHost")


class JoinRequestNoticePayload(_Payload):
    client_id: str = Field(..., alias="clientId")
    name: Optional[str] = None


class PeerJoinedPayload(_Payload):
    client_id: str = Field(..., alias="clientId")
    name: Optional[str] = None


class ExistingPeersPayload(_Payload):
    peers: List[PeerInfo] = Field(default_factory=list)


class PeerLeftPayload(_Payload):
    client_id: str = Field(..., alias="clientId")


class HostLeftPayload(_Payload):
    pass


class RelayedSignalPayload(_Payload):
    sender: str
    signal: Dict[str, Any]


class CursorUpdatePayload(_Payload):
    client_id: str = Field(..., alias="clientId")
    position: Position


class ErrorPayload(_Payload):
    message: str


class RoomCreatedMessage(BaseModel):
    type: Literal["room_created"]
    payload: RoomCreatedPayload


class JoinedMessage(BaseModel):
    type: Literal["joined"]
    payload: JoinedPayload


class JoinRequestNoticeMessage(BaseModel):
    type: Literal["join_request"]
    payload: JoinRequestNoticePayload


class PeerJoinedMessage(BaseModel):
    type: Literal["peer_joined"]
    payload: PeerJoinedPayload


class ExistingPeersMessage(BaseModel):
    type: Literal["existing_peers"]
    payload: ExistingPeersPayload


class PeerLeftMessage(BaseModel):
    type: Literal["peer_left"]
    payload: PeerLeftPayload


class HostLeftMessage(BaseModel):
    type: Literal["host_left"]
    payload: HostLeftPayload = Field(default_factory=HostLeftPayload)


class RelayedSignalMessage(BaseModel):
    type: Literal["signal"]
    payload: RelayedSignalPayload


class CursorUpdateMessage(BaseModel):
    type: Literal["cursor_update"]
    payload: CursorUpdatePayload


class ErrorMessage(BaseModel):
    type: Literal["error"]
    payload: ErrorPayload


OutboundMessage = Annotated[
    Union[
        RoomCreatedMessage,
        JoinedMessage,
        JoinRequestNoticeMessage,
        PeerJoinedMessage,
        ExistingPeersMessage,
        PeerLeftMessage,
        HostLeftMessage,
        RelayedSignalMessage,
        CursorUpdateMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_outbound_adapter = TypeAdapter(OutboundMessage)


# ============================================================================
# Helpers
# ============================================================================

def envelope(kind: OutboundType, payload: Optional[BaseModel] = None) -> Dict[str, Any]:
    """Build the wire dict for an outbound message."""
    body = payload.model_dump(by_alias=True) if payload is not None else {}
    return {"type": kind.value, "payload": body}


def _decode(raw: Union[str, bytes, Dict[str, Any]], known: set) -> Dict[str, Any]:
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedMessage(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("Envelope must be a JSON object")
    kind = data.get("type")
    if not isinstance(kind, str) or kind not in known:
        raise UnknownMessageType(kind)
    return data


def parse_inbound(raw: Union[str, bytes, Dict[str, Any]]) -> InboundMessage:
    """Parse a client -> server frame into its tagged message model."""
    data = _decode(raw, {t.value for t in InboundType})
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid {data['type']} payload: {e.error_count()} error(s)") from e


def parse_outbound(raw: Union[str, bytes, Dict[str, Any]]) -> OutboundMessage:
    """Parse a server -> client frame into its tagged message model."""
    data = _decode(raw, {t.value for t in OutboundType})
    try:
        return _outbound_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid {data['type']} payload: {e.error_count()} error(s)") from e

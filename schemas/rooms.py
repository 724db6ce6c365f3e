from pydantic import BaseModel
from typing import Optional


class RoomMember(BaseModel):
    id: str
    name: Optional[str] = None
    is_host: bool = False

class RoomDetailsResponse(BaseModel):
    room_id: str
    host_id: str
    host_name: Optional[str]
    member_count: int
    members: list[RoomMember]
    pending_count: int

class HealthResponse(BaseModel):
    status: str
    connections: int
    rooms: int
    dropped_signals: int

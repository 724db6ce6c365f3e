from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import HealthResponse, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/api/health", response_model=HealthResponse)
async def health(request: Request):
    stats = request.app.state.coordinator.stats()
    return HealthResponse(status="ok", **stats)


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get room details.

    Returns:
    - room_id: Room identifier
    - host_id / host_name: The room host
    - member_count / members: Approved members, host included
    - pending_count: Join requests awaiting the host's decision
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    details = request.app.state.coordinator.room_details(room_id)
    if details is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    logger.info(f"Room details retrieved for {room_id}: {details['member_count']} members, {details['pending_count']} pending")
    return RoomDetailsResponse(**details)

from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse
import re
import uuid
from backend import Role, room_backend
from constants import ROOM_NAMESPACE
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])

ROOM_HANDLE_RE = re.compile(r"^[0-9a-f]{32}$")


def room_handle(room_name: str) -> str:
    """Stable handle for a room name; the same name always maps to the same room."""
    return uuid.uuid5(ROOM_NAMESPACE, room_name).hex


def is_room_handle(value: str) -> bool:
    return bool(ROOM_HANDLE_RE.match(value or ""))


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the live view of a room.

    Returns:
    - room_id: Room handle
    - members: Current room-members ({id, name}) in arrival order
    - member_count: Number of room-members
    - peer_count: Number of connected peer-endpoints
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    room = room_backend.get_room(room_id) if is_room_handle(room_id) else None
    if not room or room.retired:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    members = await room.list_members()
    peers = await room.connections(Role.PEER)

    logger.info(f"Room details retrieved for {room_id}: {len(members)} members, {len(peers)} peers")

    return RoomDetailsResponse(
        room_id=room_id,
        members=members,
        member_count=len(members),
        peer_count=len(peers),
    )

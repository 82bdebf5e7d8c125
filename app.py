from fastapi import FastAPI, Query, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from routers.rooms import rooms_router, room_handle, is_room_handle
from backend import Connection, Role, RoomRegistry
from signaling import admit_member, admit_peer, depart, relay
from schemas.rooms import PeerIdentity, RoomMember
from typing import Optional
from constants import CLIENT_IP_HEADER, CORS_ORIGINS, LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


def client_address(websocket: WebSocket) -> Optional[str]:
    if CLIENT_IP_HEADER:
        forwarded = websocket.headers.get(CLIENT_IP_HEADER)
        if forwarded:
            return forwarded.strip()
    return websocket.client.host if websocket.client else None


async def reject_handshake(websocket: WebSocket, status_code: int, detail: str):
    """Refuse the upgrade. Uses an HTTP denial response when the server supports it."""
    logger.info(f"WebSocket handshake refused ({status_code}): {detail}")
    if "websocket.http.response" in (websocket.scope.get("extensions") or {}):
        await websocket.send_denial_response(PlainTextResponse(detail, status_code=status_code))
    else:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=detail)


async def pump(websocket: WebSocket, room: RoomRegistry, connection: Connection):
    """Feed inbound frames to the relay until the connection goes away."""
    message_count = 0
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected for {connection!r} in room {room.room_id} (code {message.get('code')}, {message_count} messages)")
                break
            data = message.get("text")
            if data is None:
                logger.debug(f"Dropping binary frame from {connection!r} in room {room.room_id}")
                continue
            message_count += 1
            await relay(room, connection, data)
    except Exception as e:
        logger.error(f"Error receiving from {connection!r} in room {room.room_id}: {e}", exc_info=True)


async def close_transport(websocket: WebSocket):
    # Fails harmlessly when the writer already sent a close or the client is gone
    try:
        await websocket.close()
    except Exception as e:
        logger.debug(f"Error closing WebSocket: {e}")


@app.websocket("/room")
async def room_session(
    websocket: WebSocket,
    room: Optional[str] = None,
    identifier: Optional[str] = Query(None, alias="id"),
    name: Optional[str] = None,
):
    """Room-member session: receives the room handle, then membership updates.

    Query parameters:
    - id: Required member identifier
    - room: Room name; defaults to the caller's address
    - name: Display name, unique among the room's members (default guest:{id})
    """
    address = client_address(websocket)
    logger.info(f"Room session attempt: room={room}, id={identifier}, name={name}, from {address}")

    if not identifier:
        await reject_handshake(websocket, 400, "id need")
        return

    # Address-named rooms only admit callers from that address
    if room and ("." in room or ":" in room) and room != address:
        await reject_handshake(websocket, 400, "room address mismatch")
        return

    room_name = room or address
    if not room_name:
        await reject_handshake(websocket, 400, "room need")
        return

    room_id = room_handle(room_name)
    connection = Connection(websocket, Role.MEMBER, RoomMember(id=identifier, name=name or f"guest:{identifier}"))
    joined_room, result = await admit_member(room_id, connection)
    if not result.accepted:
        await reject_handshake(websocket, 400, result.reason)
        return

    try:
        await websocket.accept()
        connection.start()
        await pump(websocket, joined_room, connection)
    except Exception as e:
        logger.error(f"Room session error for {connection!r} in room {room_id}: {e}", exc_info=True)
    finally:
        await depart(joined_room, connection)
        await close_transport(websocket)


@app.websocket("/{room_id}/peerjs")
async def peer_session(
    websocket: WebSocket,
    room_id: str,
    identifier: Optional[str] = Query(None, alias="id"),
    token: Optional[str] = None,
):
    """Peer-endpoint session: receives OPEN (or ID-TAKEN), then relayed messages.

    Query parameters:
    - id: Required peer identifier, unique among the room's peers
    - token: Required; reconnecting with the same token replaces the old session
    """
    logger.info(f"Peer session attempt: room={room_id}, id={identifier}")

    if not identifier or not token:
        await reject_handshake(websocket, 400, "id and token need")
        return

    if not is_room_handle(room_id):
        await reject_handshake(websocket, 404, "unknown room")
        return

    connection = Connection(websocket, Role.PEER, PeerIdentity(id=identifier, token=token))
    joined_room, result = await admit_peer(room_id, connection)

    try:
        await websocket.accept()
        connection.start()
        if not result.accepted:
            # ID-TAKEN and the policy close are already queued
            await connection.flush()
            return
        await pump(websocket, joined_room, connection)
    except Exception as e:
        logger.error(f"Peer session error for {connection!r} in room {room_id}: {e}", exc_info=True)
    finally:
        await depart(joined_room, connection)
        await close_transport(websocket)

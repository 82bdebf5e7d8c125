"""Membership broadcast, peer relay and identity arbitration for a room.

All functions take the room's registry and a `Connection`; none of them
touch the registry table directly or wait on the network.
"""
import hmac
from typing import Optional, Tuple

from fastapi import status
from pydantic import ValidationError

from backend import Connection, JoinResult, Role, RoomRegistry, Verdict, room_backend
from constants import HEARTBEAT, ID_TAKEN, ID_TAKEN_REASON, OPEN
from logging_config import get_logger
from schemas.rooms import RelayEnvelope, member_snapshot

logger = get_logger(__name__)


async def announce(room: RoomRegistry, exclude: Optional[str] = None) -> int:
    """Send the current member list to every member of the room.

    `exclude` drops one identifier from the list (used for departures).
    Returns the number of members the update was queued for.
    """
    recipients = await room.connections(Role.MEMBER)
    members = [c.identity for c in recipients if c.identifier != exclude]
    data = member_snapshot.dump_json(members).decode()
    for connection in recipients:
        connection.send(data)
    logger.debug(f"Announced {len(members)} members to {len(recipients)} connections in room {room.room_id}")
    return len(recipients)


def arbitrate_peer(existing: Optional[Connection], incoming: Connection) -> Verdict:
    if existing is None:
        return Verdict.ADMIT
    # Same token means the same peer reconnecting
    if hmac.compare_digest(existing.identity.token.encode(), incoming.identity.token.encode()):
        return Verdict.TAKEOVER
    return Verdict.REJECT


async def admit_member(room_id: str, connection: Connection) -> Tuple[RoomRegistry, JoinResult]:
    room, result = await room_backend.join(room_id, connection, greeting=room_id)
    if not result.accepted:
        logger.info(f"Member '{connection.identity.name}' refused in room {room_id}: {result.reason}")
        return room, result

    logger.info(f"Member {connection.identifier} ({connection.identity.name}) joined room {room_id}")
    await announce(room)
    return room, result


async def admit_peer(room_id: str, connection: Connection) -> Tuple[RoomRegistry, JoinResult]:
    """Register a peer-endpoint, taking over or refusing on an identifier collision.

    A refused connection is never registered; it gets `ID-TAKEN` queued
    followed by a policy-violation close.
    """
    room, result = await room_backend.join(room_id, connection, greeting=OPEN, arbitrate=arbitrate_peer)
    if not result.accepted:
        logger.info(f"Peer {connection.identifier} refused in room {room_id}: {result.reason}")
        connection.send(ID_TAKEN)
        connection.close(status.WS_1008_POLICY_VIOLATION, ID_TAKEN_REASON)
        return room, result

    if result.evicted is not None:
        logger.info(f"Peer {connection.identifier} took over its previous session in room {room_id}")
    else:
        logger.info(f"Peer {connection.identifier} joined room {room_id}")
    await announce(room)
    return room, result


async def relay(room: RoomRegistry, sender: Connection, raw: str) -> bool:
    """Handle one inbound frame. Returns True if it was forwarded to a peer."""
    if raw == HEARTBEAT:
        sender.send(HEARTBEAT)
        return False

    if sender.role is not Role.PEER:
        logger.debug(f"Ignoring frame from member {sender.identifier} in room {room.room_id}")
        return False

    # A session that was taken over no longer speaks for its identifier
    if await room.lookup(Role.PEER, sender.identifier) is not sender:
        logger.debug(f"Dropping message from replaced session {sender!r} in room {room.room_id}")
        return False

    try:
        envelope = RelayEnvelope.model_validate_json(raw)
    except ValidationError as e:
        logger.debug(f"Dropping malformed message from {sender.identifier} in room {room.room_id}: {e.error_count()} errors")
        return False

    destination = await room.lookup(Role.PEER, envelope.dst)
    if destination is None:
        logger.debug(f"Dropping message from {sender.identifier} to unknown peer {envelope.dst} in room {room.room_id}")
        return False

    envelope.src = sender.identifier
    destination.send(envelope.model_dump_json())
    return True


async def depart(room: RoomRegistry, connection: Connection) -> bool:
    """Tear down a finished session. Safe to call more than once per connection."""
    connection.stop()
    removed = await room.leave(connection)
    if removed:
        logger.info(f"{connection.role.name.title()} {connection.identifier} left room {room.room_id}")
        if connection.role is Role.MEMBER:
            await announce(room, exclude=connection.identifier)
    room_backend.discard_room(room)
    return removed

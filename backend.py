import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from fastapi import status

from constants import ID_TAKEN_REASON
from logging_config import get_logger
from room_keys import MEMBER_KEY, PEER_KEY
from schemas.rooms import PeerIdentity, RoomMember

logger = get_logger(__name__)


class Role(str, Enum):
    MEMBER = "user"
    PEER = "peerjs"


class Verdict(Enum):
    ADMIT = "admit"
    TAKEOVER = "takeover"
    REJECT = "reject"


class JoinOutcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RETIRED = "retired"


DUPLICATE_MEMBER_ID = "duplicated id"

REJECT_REASONS = {
    Role.MEMBER: "duplicated name",
    Role.PEER: ID_TAKEN_REASON,
}


def registry_key(role: Role, key: str) -> str:
    if role is Role.MEMBER:
        return MEMBER_KEY.format(name=key)
    return PEER_KEY.format(identifier=key)


class _CloseFrame(NamedTuple):
    code: int
    reason: Optional[str]


class Connection:
    """A live websocket tagged with its role and identity.

    Outbound traffic goes through an outbox drained by a writer task, so
    `send` and `close` never block the caller. The writer is started once
    the transport is accepted; anything queued before that is delivered
    first, in order.
    """

    def __init__(self, transport, role: Role, identity: Union[RoomMember, PeerIdentity]):
        self.transport = transport
        self.role = role
        self.identity = identity
        self.handle = uuid.uuid4().hex
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._closing = False

    def __repr__(self):
        return f"<Connection {self.role.value}:{self.identifier} {self.handle[:8]}>"

    @property
    def identifier(self) -> str:
        return self.identity.id

    @property
    def key(self) -> str:
        if self.role is Role.MEMBER:
            return registry_key(self.role, self.identity.name)
        return registry_key(self.role, self.identity.id)

    @property
    def closing(self) -> bool:
        return self._closing

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, message: str):
        if self._closing:
            return
        self._outbox.put_nowait(message)

    def close(self, code: int = status.WS_1000_NORMAL_CLOSURE, reason: Optional[str] = None):
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(_CloseFrame(code, reason))

    async def flush(self):
        """Wait until everything queued so far has been written (or dropped)."""
        await self._outbox.join()

    def stop(self):
        """Drop the writer and anything still queued. Does not suspend.

        This sends nothing on the transport. A finished session calls it
        through `depart` first, so the leave and announce complete even if
        the session is being cancelled, and only then closes the websocket
        itself.
        """
        self._closing = True
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        self._discard_pending()

    async def _drain(self):
        while True:
            item = await self._outbox.get()
            try:
                if isinstance(item, _CloseFrame):
                    await self.transport.close(code=item.code, reason=item.reason)
                else:
                    await self.transport.send_text(item)
            except Exception as e:
                # The receive loop of this connection sees the disconnect and cleans up
                logger.debug(f"Send to {self!r} failed: {e}")
                self._closing = True
                self._outbox.task_done()
                self._discard_pending()
                return
            self._outbox.task_done()
            if isinstance(item, _CloseFrame):
                self._discard_pending()
                return

    def _discard_pending(self):
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()


@dataclass
class JoinResult:
    outcome: JoinOutcome
    reason: Optional[str] = None
    evicted: Optional[Connection] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is JoinOutcome.ACCEPTED


Arbitrate = Callable[[Optional[Connection], Connection], Verdict]


class RoomRegistry:
    """Connection table of a single room.

    Every read and write of the table happens under the room's lock. Nothing
    here awaits network I/O: sends are only enqueued on the connections.
    """

    def __init__(self, room_id: str):
        self.room_id = room_id
        self.retired = False
        self._table: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._table)

    async def join(self, connection: Connection, greeting: Optional[str] = None,
                   arbitrate: Optional[Arbitrate] = None) -> JoinResult:
        """Admit `connection` unless its key is held by another live connection.

        `arbitrate` decides collisions; without it a collision is a rejection.
        On admission `greeting` is queued as the first message of the
        connection, before anything another join or relay could queue.
        """
        async with self._lock:
            if self.retired:
                return JoinResult(JoinOutcome.RETIRED)

            if connection.role is Role.MEMBER and self._holds_member_id(connection.identifier):
                logger.debug(f"Join of {connection!r} rejected in room {self.room_id}: member id in use")
                return JoinResult(JoinOutcome.REJECTED, reason=DUPLICATE_MEMBER_ID)

            key = connection.key
            existing = self._table.get(key)
            if arbitrate is not None:
                verdict = arbitrate(existing, connection)
            else:
                verdict = Verdict.ADMIT if existing is None else Verdict.REJECT

            if verdict is Verdict.REJECT:
                logger.debug(f"Join of {connection!r} rejected in room {self.room_id}: {key} is held by {existing!r}")
                return JoinResult(JoinOutcome.REJECTED, reason=REJECT_REASONS[connection.role])

            evicted = None
            if verdict is Verdict.TAKEOVER and existing is not None:
                del self._table[key]
                existing.close(status.WS_1000_NORMAL_CLOSURE)
                evicted = existing
                logger.debug(f"Evicted {existing!r} from room {self.room_id}")

            self._table[key] = connection
            if greeting is not None:
                connection.send(greeting)
            logger.debug(f"Admitted {connection!r} to room {self.room_id} ({len(self._table)} connections)")
            return JoinResult(JoinOutcome.ACCEPTED, evicted=evicted)

    def _holds_member_id(self, identifier: str) -> bool:
        return any(c.role is Role.MEMBER and c.identifier == identifier for c in self._table.values())

    async def leave(self, connection: Connection) -> bool:
        """Remove `connection`. Returns False if it was not (or no longer) registered."""
        async with self._lock:
            key = connection.key
            if self._table.get(key) is not connection:
                return False
            del self._table[key]
            if not self._table:
                self.retired = True
            logger.debug(f"Removed {connection!r} from room {self.room_id} ({len(self._table)} connections)")
            return True

    async def lookup(self, role: Role, key: str) -> Optional[Connection]:
        async with self._lock:
            return self._table.get(registry_key(role, key))

    async def connections(self, role: Optional[Role] = None) -> List[Connection]:
        """Arrival-ordered copy of the live connections, optionally of one role."""
        async with self._lock:
            return [c for c in self._table.values() if role is None or c.role is role]

    async def list_members(self) -> List[RoomMember]:
        return [c.identity for c in await self.connections(Role.MEMBER)]


class RoomBackend:
    def __init__(self):
        self.rooms: Dict[str, RoomRegistry] = {}

    def get_room(self, room_id: str) -> Optional[RoomRegistry]:
        return self.rooms.get(room_id)

    def get_or_create_room(self, room_id: str) -> RoomRegistry:
        room = self.rooms.get(room_id)
        if room is None or room.retired:
            room = RoomRegistry(room_id)
            self.rooms[room_id] = room
            logger.info(f"Room {room_id} created")
        return room

    async def join(self, room_id: str, connection: Connection, greeting: Optional[str] = None,
                   arbitrate: Optional[Arbitrate] = None) -> Tuple[RoomRegistry, JoinResult]:
        """Join `connection` to the room, creating the room if needed.

        A registry retires when its last connection leaves; a join that lands
        on a retired registry is retried on a fresh one.
        """
        while True:
            room = self.get_or_create_room(room_id)
            result = await room.join(connection, greeting=greeting, arbitrate=arbitrate)
            if result.outcome is not JoinOutcome.RETIRED:
                return room, result
            self.discard_room(room)

    def discard_room(self, room: RoomRegistry):
        if room.retired and self.rooms.get(room.room_id) is room:
            del self.rooms[room.room_id]
            logger.info(f"Room {room.room_id} is empty, discarded")


room_backend = RoomBackend()

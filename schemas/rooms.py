from pydantic import BaseModel, ConfigDict, TypeAdapter
from typing import Any, List


class RoomMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str

class PeerIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    token: str

class RelayEnvelope(BaseModel):
    """Relayed handshake message. Only `dst` is read; everything else passes through."""
    model_config = ConfigDict(extra="allow")

    dst: str
    src: Any = None

class RoomDetailsResponse(BaseModel):
    room_id: str
    members: List[RoomMember]
    member_count: int
    peer_count: int


member_snapshot = TypeAdapter(List[RoomMember])

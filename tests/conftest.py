import pytest
from fastapi.testclient import TestClient

from backend import Connection, Role, room_backend
from schemas.rooms import PeerIdentity, RoomMember


class FakeTransport:
    """Stands in for a websocket on the sending side."""

    def __init__(self, fail=False):
        self.sent = []
        self.closed = None
        self.fail = fail

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        if self.fail:
            raise RuntimeError("connection lost")
        self.closed = (code, reason)


@pytest.fixture(autouse=True)
def clean_rooms():
    room_backend.rooms.clear()
    yield
    room_backend.rooms.clear()


@pytest.fixture
def client():
    from app import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def member():
    def factory(identifier, name=None, fail=False, start=True):
        connection = Connection(FakeTransport(fail=fail), Role.MEMBER,
                                RoomMember(id=identifier, name=name or f"guest:{identifier}"))
        if start:
            connection.start()
        return connection
    return factory


@pytest.fixture
def peer():
    def factory(identifier, token="secret", fail=False, start=True):
        connection = Connection(FakeTransport(fail=fail), Role.PEER, PeerIdentity(id=identifier, token=token))
        if start:
            connection.start()
        return connection
    return factory

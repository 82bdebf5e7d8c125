import asyncio
import json

from backend import Role, Verdict, room_backend
from constants import HEARTBEAT, ID_TAKEN, OPEN
from signaling import admit_member, admit_peer, announce, arbitrate_peer, depart, relay


def decoded(connection):
    return [json.loads(message) for message in connection.transport.sent]


async def test_arbiter_table(peer):
    holder = peer("x", token="t1")

    assert arbitrate_peer(None, peer("x", token="t1")) is Verdict.ADMIT
    assert arbitrate_peer(holder, peer("x", token="t1")) is Verdict.TAKEOVER
    assert arbitrate_peer(holder, peer("x", token="t2")) is Verdict.REJECT


async def test_member_join_sends_room_id_then_snapshot(member):
    alice = member("a", "Alice")

    room, result = await admit_member("room-1", alice)
    await alice.flush()

    assert result.accepted
    assert alice.transport.sent[0] == "room-1"
    assert json.loads(alice.transport.sent[1]) == [{"id": "a", "name": "Alice"}]


async def test_member_join_announces_to_everyone(member):
    alice = member("a", "Alice")
    bob = member("b", "Bob")
    await admit_member("room-1", alice)
    await admit_member("room-1", bob)
    await alice.flush()
    await bob.flush()

    expected = [{"id": "a", "name": "Alice"}, {"id": "b", "name": "Bob"}]
    assert json.loads(alice.transport.sent[-1]) == expected
    assert bob.transport.sent[0] == "room-1"
    assert json.loads(bob.transport.sent[-1]) == expected


async def test_announce_excludes_identifier(member):
    alice = member("a", "Alice")
    bob = member("b", "Bob")
    room, _ = await admit_member("room-1", alice)
    await admit_member("room-1", bob)

    delivered = await announce(room, exclude="b")
    await bob.flush()

    assert delivered == 2
    assert json.loads(bob.transport.sent[-1]) == [{"id": "a", "name": "Alice"}]


async def test_announce_survives_a_broken_member(member):
    broken = member("a", "Alice", fail=True)
    bob = member("b", "Bob")
    room, _ = await admit_member("room-1", broken)
    await admit_member("room-1", bob)

    await announce(room)
    await bob.flush()
    await broken.flush()

    assert json.loads(bob.transport.sent[-1]) == [{"id": "a", "name": "Alice"}, {"id": "b", "name": "Bob"}]
    assert broken.closing


async def test_departing_member_is_announced_once(member):
    alice = member("a", "Alice")
    bob = member("b", "Bob")
    room, _ = await admit_member("room-1", alice)
    await admit_member("room-1", bob)
    await alice.flush()
    before = len(alice.transport.sent)

    assert await depart(room, bob) is True
    assert await depart(room, bob) is False
    await alice.flush()

    assert len(alice.transport.sent) == before + 1
    assert json.loads(alice.transport.sent[-1]) == [{"id": "a", "name": "Alice"}]


async def test_last_departure_discards_the_room(member):
    alice = member("a", "Alice")
    room, _ = await admit_member("room-1", alice)

    await depart(room, alice)

    assert room_backend.get_room("room-1") is None


async def test_peer_admit_sends_open_and_announces_once(member, peer):
    alice = member("a", "Alice")
    await admit_member("room-1", alice)
    await alice.flush()
    before = len(alice.transport.sent)
    p1 = peer("p1")

    room, result = await admit_peer("room-1", p1)
    await p1.flush()
    await alice.flush()

    assert result.accepted
    assert p1.transport.sent == [OPEN]
    assert len(alice.transport.sent) == before + 1


async def test_peer_takeover_with_matching_token(peer):
    first = peer("x", token="t1")
    second = peer("x", token="t1")
    room, _ = await admit_peer("room-1", first)

    _, result = await admit_peer("room-1", second)
    await first.flush()
    await second.flush()

    assert result.accepted
    assert result.evicted is first
    assert first.transport.closed == (1000, None)
    assert second.transport.sent == [OPEN]
    assert await room.lookup(Role.PEER, "x") is second


async def test_peer_with_other_token_is_refused(peer):
    first = peer("x", token="t1")
    second = peer("x", token="t2")
    room, _ = await admit_peer("room-1", first)

    _, result = await admit_peer("room-1", second)
    await second.flush()

    assert not result.accepted
    assert second.transport.sent == [ID_TAKEN]
    assert second.transport.closed == (1008, "ID is taken")
    assert first.transport.closed is None
    assert await room.lookup(Role.PEER, "x") is first


async def test_concurrent_peer_admits_pick_one_winner(peer):
    contenders = [peer("x", token=f"t{i}") for i in range(5)]

    outcomes = await asyncio.gather(*(admit_peer("room-1", c) for c in contenders))

    winners = [c for c, (_, result) in zip(contenders, outcomes) if result.accepted]
    assert len(winners) == 1
    room = room_backend.get_room("room-1")
    assert await room.connections(Role.PEER) == winners


async def test_relay_stamps_the_sender(peer):
    p1 = peer("P1")
    p2 = peer("P2")
    room, _ = await admit_peer("room-1", p1)
    await admit_peer("room-1", p2)

    forwarded = await relay(room, p1, json.dumps({"type": "OFFER", "dst": "P2", "src": "P9", "payload": "x"}))
    await p2.flush()

    assert forwarded
    assert decoded(p2)[-1] == {"type": "OFFER", "dst": "P2", "src": "P1", "payload": "x"}


async def test_relay_keeps_null_fields(peer):
    p1 = peer("P1")
    p2 = peer("P2")
    room, _ = await admit_peer("room-1", p1)
    await admit_peer("room-1", p2)

    await relay(room, p1, '{"dst": "P2", "payload": null}')
    await p2.flush()

    assert decoded(p2)[-1] == {"dst": "P2", "src": "P1", "payload": None}


async def test_relay_to_unknown_destination_is_dropped(peer):
    p1 = peer("P1")
    room, _ = await admit_peer("room-1", p1)
    await p1.flush()

    forwarded = await relay(room, p1, json.dumps({"dst": "ghost", "payload": "x"}))
    await p1.flush()

    assert not forwarded
    assert p1.transport.sent == [OPEN]
    assert len(room) == 1


async def test_replaced_session_is_not_relayed(peer):
    old = peer("X", token="t1")
    p2 = peer("P2")
    room, _ = await admit_peer("room-1", old)
    await admit_peer("room-1", p2)
    new = peer("X", token="t1")
    await admit_peer("room-1", new)

    forwarded = await relay(room, old, json.dumps({"dst": "P2", "payload": "x"}))
    await p2.flush()

    assert not forwarded
    assert p2.transport.sent == [OPEN]
    assert await relay(room, new, json.dumps({"dst": "P2", "payload": "y"}))
    await p2.flush()
    assert decoded(p2)[-1] == {"dst": "P2", "src": "X", "payload": "y"}


async def test_relay_drops_malformed_messages(peer):
    p1 = peer("P1")
    p2 = peer("P2")
    room, _ = await admit_peer("room-1", p1)
    await admit_peer("room-1", p2)

    for raw in ("not json", "[1, 2]", '{"payload": "x"}', '{"dst": 42}'):
        assert not await relay(room, p1, raw)
    await p2.flush()

    assert p2.transport.sent == [OPEN]


async def test_heartbeat_is_echoed_not_relayed(member, peer):
    alice = member("a", "Alice")
    p1 = peer("P1")
    room, _ = await admit_member("room-1", alice)
    await admit_peer("room-1", p1)
    await alice.flush()
    await p1.flush()

    await relay(room, p1, HEARTBEAT)
    await relay(room, alice, HEARTBEAT)
    await alice.flush()
    await p1.flush()

    assert p1.transport.sent[-1] == HEARTBEAT
    assert alice.transport.sent[-1] == HEARTBEAT


async def test_member_frames_are_not_relayed(member, peer):
    alice = member("a", "Alice")
    p1 = peer("a")
    room, _ = await admit_member("room-1", alice)
    await admit_peer("room-1", p1)

    assert not await relay(room, alice, json.dumps({"dst": "a", "payload": "x"}))
    await p1.flush()

    assert p1.transport.sent == [OPEN]

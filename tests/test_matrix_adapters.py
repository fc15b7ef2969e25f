import asyncio
import copy
from types import SimpleNamespace

import pytest
from mautrix.errors import MatrixUnknownRequestError, MNotFound

from bouncer.challenge import challenge_symbol
from bouncer.engine import JoinChallengeEngine
from bouncer.errors import BNC_E_CONFIG_INVALID, BNC_E_ROOM_NOT_FOUND, BNC_E_ROOM_SERVICE, BouncerError
from bouncer.matrix import MautrixEventStream, MautrixRoomService, MemberJoin, Reaction, ensure_identity

ROOM = "!r:example.org"
GATEKEEPER = "@bouncer:example.org"
ALICE = "@alice:example.org"
BOB = "@bob:example.org"


class _Session:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakeMautrixClient:
    """Duck-typed stand-in for mautrix.client.Client.

    State is keyed by (room_id, event type string). `delay` makes every
    state read and write yield to the event loop first.
    """

    def __init__(self, user_id: str = GATEKEEPER, delay: float = 0.0):
        self.user_id = user_id
        self.delay = delay
        self.state = {}
        self.events = {}
        self.profiles = {}
        self.errors = {}
        self.state_writes = []
        self.messages = []
        self.invites = []
        self.sync_results = []
        self.sync_calls = []
        self.api = SimpleNamespace(session=_Session())

    def _maybe_fail(self, op):
        if op in self.errors:
            raise self.errors[op]

    async def whoami(self):
        self._maybe_fail("whoami")
        return SimpleNamespace(user_id=self.user_id)

    async def get_joined_rooms(self):
        self._maybe_fail("get_joined_rooms")
        return sorted({room for room, _ in self.state})

    async def get_state_event(self, room_id, event_type, state_key=""):
        await asyncio.sleep(self.delay)
        self._maybe_fail("get_state_event")
        key = (str(room_id), str(event_type))
        if key not in self.state:
            raise MNotFound(404, "Event not found.")
        return copy.deepcopy(self.state[key])

    async def send_state_event(self, room_id, event_type, content, state_key=""):
        await asyncio.sleep(self.delay)
        self._maybe_fail("send_state_event")
        self.state_writes.append((str(room_id), str(event_type), copy.deepcopy(content)))
        self.state[(str(room_id), str(event_type))] = copy.deepcopy(content)
        return f"$state{len(self.state_writes)}"

    async def send_message_event(self, room_id, event_type, content):
        self._maybe_fail("send_message_event")
        event_id = f"$msg{len(self.messages) + 1}"
        self.messages.append((str(room_id), str(event_type), content))
        self.events[(str(room_id), event_id)] = SimpleNamespace(sender=self.user_id)
        return event_id

    async def get_event(self, room_id, event_id):
        self._maybe_fail("get_event")
        return self.events[(str(room_id), str(event_id))]

    async def invite_user(self, room_id, user_id):
        self._maybe_fail("invite_user")
        self.invites.append((str(room_id), str(user_id)))

    async def get_profile(self, user_id):
        self._maybe_fail("get_profile")
        return SimpleNamespace(displayname=self.profiles.get(str(user_id)))

    async def sync(self, since=None, timeout=30000):
        self.sync_calls.append(since)
        if not self.sync_results:
            # Park like a long poll with nothing new.
            await asyncio.Event().wait()
        result = self.sync_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _levels(**overrides):
    content = {
        "users": {GATEKEEPER: 100},
        "users_default": 0,
        "events_default": 10,
        "events": {"m.reaction": 0, "m.room.power_levels": 100},
        "ban": 50,
    }
    content.update(overrides)
    return content


@pytest.fixture
def client():
    c = FakeMautrixClient()
    c.state[(ROOM, "m.room.power_levels")] = _levels()
    c.state[(ROOM, "m.room.name")] = {"name": "Lobby"}
    return c


@pytest.mark.asyncio
async def test_room_state_treats_missing_events_as_none(client):
    svc = MautrixRoomService(client)
    state = await svc.room_state(ROOM)
    assert state.name == "Lobby"
    assert state.canonical_alias is None
    assert state.join_rule is None


@pytest.mark.asyncio
async def test_power_levels_default_when_event_missing(client):
    svc = MautrixRoomService(client)
    levels = await svc.power_levels("!bare:example.org")
    assert levels.events_default == 0
    assert levels.state_default == 50
    assert (await svc.power_levels(ROOM)).events_default == 10


@pytest.mark.asyncio
async def test_set_user_power_level_keeps_unrelated_keys(client):
    svc = MautrixRoomService(client)
    await svc.set_user_power_level(ROOM, ALICE, 10)

    assert len(client.state_writes) == 1
    room_id, event_type, content = client.state_writes[0]
    assert (room_id, event_type) == (ROOM, "m.room.power_levels")
    assert content["users"] == {GATEKEEPER: 100, ALICE: 10}
    assert content["ban"] == 50
    assert content["events_default"] == 10
    assert content["events"] == {"m.reaction": 0, "m.room.power_levels": 100}


@pytest.mark.asyncio
async def test_send_reply_builds_reply_with_html(client):
    svc = MautrixRoomService(client)
    event_id = await svc.send_reply(ROOM, "$join", "hello", html="<b>hello</b>")

    room_id, event_type, content = client.messages[0]
    assert (room_id, event_type) == (ROOM, "m.room.message")
    assert content["msgtype"] == "m.text"
    assert content["body"] == "hello"
    assert content["m.relates_to"] == {"m.in_reply_to": {"event_id": "$join"}}
    assert content["format"] == "org.matrix.custom.html"
    assert content["formatted_body"] == "<b>hello</b>"
    assert await svc.event_sender(ROOM, event_id) == GATEKEEPER


@pytest.mark.asyncio
async def test_send_reply_without_html_is_plain(client):
    svc = MautrixRoomService(client)
    await svc.send_reply(ROOM, "$join", "hello")
    content = client.messages[0][2]
    assert "format" not in content
    assert "formatted_body" not in content


@pytest.mark.asyncio
async def test_not_found_maps_to_room_not_found(client):
    client.errors["invite_user"] = MNotFound(404, "Unknown room")
    svc = MautrixRoomService(client)

    with pytest.raises(BouncerError) as ei:
        await svc.invite(ROOM, ALICE)
    err = ei.value
    assert err.code == BNC_E_ROOM_NOT_FOUND
    assert err.http_status == 404
    assert err.retryable
    assert err.details["room_id"] == ROOM


@pytest.mark.asyncio
async def test_other_request_errors_map_to_room_service(client):
    client.errors["get_profile"] = MatrixUnknownRequestError(http_status=500, text="boom", errcode="M_UNKNOWN")
    svc = MautrixRoomService(client)

    with pytest.raises(BouncerError) as ei:
        await svc.display_name(ALICE)
    err = ei.value
    assert err.code == BNC_E_ROOM_SERVICE
    assert err.http_status == 502
    assert err.retryable
    assert err.details["errcode"] == "M_UNKNOWN"


@pytest.mark.asyncio
async def test_state_read_errors_other_than_not_found_propagate(client):
    client.errors["get_state_event"] = MatrixUnknownRequestError(http_status=500, text="boom")
    svc = MautrixRoomService(client)
    with pytest.raises(BouncerError) as ei:
        await svc.power_levels(ROOM)
    assert ei.value.code == BNC_E_ROOM_SERVICE


@pytest.mark.asyncio
async def test_profile_invite_and_close(client):
    client.profiles[ALICE] = "Alice"
    svc = MautrixRoomService(client)

    assert await svc.display_name(ALICE) == "Alice"
    assert await svc.display_name(BOB) is None
    await svc.invite(ROOM, ALICE)
    assert client.invites == [(ROOM, ALICE)]
    assert await svc.joined_rooms() == [ROOM]

    await svc.close()
    assert client.api.session.closed


@pytest.mark.asyncio
async def test_ensure_identity_accepts_matching_token(client):
    svc = MautrixRoomService(client)
    assert await svc.whoami() == GATEKEEPER
    await ensure_identity(svc, GATEKEEPER)


@pytest.mark.asyncio
async def test_ensure_identity_rejects_token_of_another_user(client):
    svc = MautrixRoomService(client)
    with pytest.raises(BouncerError) as ei:
        await ensure_identity(svc, "@someone-else:example.org")
    assert ei.value.code == BNC_E_CONFIG_INVALID
    assert GATEKEEPER in ei.value.details["problems"][0]


@pytest.mark.asyncio
async def test_overlapping_promotions_are_all_kept():
    client = FakeMautrixClient(delay=0.01)
    client.state[(ROOM, "m.room.power_levels")] = _levels()
    svc = MautrixRoomService(client)
    challenge_alice = await svc.send_reply(ROOM, "$join1", "welcome alice")
    challenge_bob = await svc.send_reply(ROOM, "$join2", "welcome bob")

    engine = JoinChallengeEngine(svc, GATEKEEPER, [ROOM])

    class Stream:
        async def __aiter__(self):
            yield Reaction("$r1", ROOM, ALICE, challenge_alice, challenge_symbol(ALICE))
            yield Reaction("$r2", ROOM, BOB, challenge_bob, challenge_symbol(BOB))
            yield Reaction("$r3", ROOM, ALICE, challenge_alice, challenge_symbol(ALICE))

    await engine.run(Stream())

    users = client.state[(ROOM, "m.room.power_levels")]["users"]
    assert users == {GATEKEEPER: 100, ALICE: 10, BOB: 10}
    assert len(client.state_writes) == 2


def _sync_payload(next_batch, *events, room_id=ROOM):
    return {
        "next_batch": next_batch,
        "rooms": {"join": {room_id: {"timeline": {"events": list(events)}}}},
    }


def _join_event(event_id, user_id):
    return {
        "event_id": event_id,
        "type": "m.room.member",
        "state_key": user_id,
        "sender": user_id,
        "origin_server_ts": 1_700_000_000_000,
        "content": {"membership": "join"},
    }


@pytest.mark.asyncio
async def test_stream_tracks_next_batch_and_survives_sync_failures():
    client = FakeMautrixClient()
    client.sync_results = [
        MatrixUnknownRequestError(http_status=502, text="bad gateway"),
        _sync_payload("s1", _join_event("$j1", ALICE)),
        RuntimeError("connection reset"),
        _sync_payload("s2", _join_event("$j2", BOB)),
        _sync_payload("s3", _join_event("$elsewhere", BOB), room_id="!other:example.org"),
        _sync_payload("s4", _join_event("$j3", "@carol:example.org")),
    ]
    stream = MautrixEventStream(client, rooms=[ROOM], initial_backoff_seconds=0)

    seen = []
    async for event in stream:
        seen.append(event)
        if len(seen) == 3:
            break

    assert [e.event_id for e in seen] == ["$j1", "$j2", "$j3"]
    assert all(isinstance(e, MemberJoin) for e in seen)
    # Failed syncs retry from the last good position.
    assert client.sync_calls == [None, None, "s1", "s1", "s2", "s3"]
    assert stream.next_batch == "s4"

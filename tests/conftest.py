"""Shared in-memory collaborators for the bouncer tests."""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from bouncer.errors import BNC_E_ROOM_NOT_FOUND, BNC_E_ROOM_SERVICE, BouncerError, bouncer_error
from bouncer.matrix import PowerLevels, RoomState
from bouncer.ops_stats import OPS_STATS

GATEKEEPER = "@bouncer:example.org"


class FakeRoomService:
    """RoomService double: canned state, recorded side effects, injectable failures."""

    def __init__(self, own_user_id: str = GATEKEEPER):
        self.own_user_id = own_user_id
        self.levels: Dict[str, Dict[str, Any]] = {}
        self.states: Dict[str, RoomState] = {}
        self.profiles: Dict[str, Optional[str]] = {}
        self.senders: Dict[Tuple[str, str], str] = {}
        self.failures: Dict[str, BouncerError] = {}

        self.calls: List[str] = []
        self.invites: List[Tuple[str, str]] = []
        self.replies: List[Dict[str, Any]] = []
        self.power_writes: List[Tuple[str, str, int]] = []
        self._next_event = 0

    def add_room(self, room_id: str, name: Optional[str] = None, levels: Optional[Dict[str, Any]] = None,
                 join_rule: Optional[str] = "invite", alias: Optional[str] = None) -> None:
        self.states[room_id] = RoomState(room_id=room_id, name=name, canonical_alias=alias, join_rule=join_rule)
        self.levels[room_id] = levels if levels is not None else {"users": {self.own_user_id: 100}}

    def fail(self, op: str, not_found: bool = False) -> None:
        self.failures[op] = bouncer_error(
            BNC_E_ROOM_NOT_FOUND if not_found else BNC_E_ROOM_SERVICE,
            f"{op} failed",
            retryable=True,
            http_status=404 if not_found else 502,
        )

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self.failures:
            raise self.failures[op]

    async def whoami(self) -> str:
        self._enter("whoami")
        return self.own_user_id

    async def joined_rooms(self) -> List[str]:
        self._enter("joined_rooms")
        return list(self.states)

    async def room_state(self, room_id: str) -> RoomState:
        self._enter("room_state")
        return self.states[room_id]

    async def power_levels(self, room_id: str) -> PowerLevels:
        self._enter("power_levels")
        return PowerLevels.from_content(self.levels.get(room_id))

    async def set_user_power_level(self, room_id: str, user_id: str, level: int) -> None:
        self._enter("set_user_power_level")
        self.power_writes.append((room_id, user_id, level))
        users = self.levels.setdefault(room_id, {}).setdefault("users", {})
        users[user_id] = level

    async def invite(self, room_id: str, user_id: str) -> None:
        self._enter("invite")
        self.invites.append((room_id, user_id))

    async def display_name(self, user_id: str) -> Optional[str]:
        self._enter("display_name")
        return self.profiles.get(user_id)

    async def send_reply(self, room_id: str, reply_to: str, body: str, html: Optional[str] = None) -> str:
        self._enter("send_reply")
        self._next_event += 1
        event_id = f"$challenge{self._next_event}"
        self.replies.append({"room_id": room_id, "reply_to": reply_to, "body": body, "html": html,
                             "event_id": event_id})
        self.senders[(room_id, event_id)] = self.own_user_id
        return event_id

    async def event_sender(self, room_id: str, event_id: str) -> str:
        self._enter("event_sender")
        return self.senders[(room_id, event_id)]


class FakeVerifier:
    def __init__(self, result: bool = True, error: Optional[BouncerError] = None):
        self.result = result
        self.error = error
        self.calls: List[Tuple[str, Optional[str]]] = []

    async def verify(self, proof_token: str, remote_ip: Optional[str] = None) -> bool:
        self.calls.append((proof_token, remote_ip))
        if self.error is not None:
            raise self.error
        return self.result


class ListStream:
    """EventStream over a fixed list of events."""

    def __init__(self, events):
        self.events = list(events)

    async def __aiter__(self):
        for event in self.events:
            yield event


@pytest.fixture(autouse=True)
def _reset_ops_stats():
    OPS_STATS.reset()
    yield


@pytest.fixture
def room_service() -> FakeRoomService:
    return FakeRoomService()


@pytest.fixture
def fakes():
    """Expose the fake classes to test modules without path tricks."""
    return type("Fakes", (), {
        "RoomService": FakeRoomService,
        "Verifier": FakeVerifier,
        "ListStream": ListStream,
        "GATEKEEPER": GATEKEEPER,
    })

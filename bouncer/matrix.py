"""Matrix collaborator interfaces and their mautrix-backed adapters.

The gate and the challenge engine never talk to mautrix directly. They depend
on two small protocols:

* `RoomService` - the membership/room-state actions the bouncer needs
  (enumerate rooms, read room state and power levels, invite, send a reply,
  override one user's power level).
* `EventStream` - an async iterator of already-classified events
  (`MemberJoin`, `Reaction`, `OtherEvent`).

`MautrixRoomService` and `MautrixEventStream` implement them against a
homeserver. Every `MatrixRequestError` is translated into a `BouncerError`
with `retryable=True` so callers see one failure type for all collaborators.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Union

from mautrix.client import Client
from mautrix.errors import MatrixRequestError, MNotFound
from mautrix.types import DeviceID, EventID, EventType, RoomID, UserID

from .errors import BNC_E_CONFIG_INVALID, BNC_E_ROOM_NOT_FOUND, BNC_E_ROOM_SERVICE, BouncerError, bouncer_error

logger = logging.getLogger(__name__)

MEMBER_EVENT = "m.room.member"
REACTION_EVENT = "m.reaction"
MESSAGE_EVENT = "m.room.message"
POWER_LEVELS_EVENT = "m.room.power_levels"


# ---------------------------
# Room state snapshots
# ---------------------------

@dataclass(frozen=True)
class PowerLevels:
    """Read-only view of an `m.room.power_levels` content, with Matrix defaults."""

    users: Dict[str, int] = field(default_factory=dict)
    users_default: int = 0
    events: Dict[str, int] = field(default_factory=dict)
    events_default: int = 0
    state_default: int = 50
    invite: int = 0

    @classmethod
    def from_content(cls, content: Optional[Dict[str, Any]]) -> "PowerLevels":
        c = content or {}

        def _int(v: Any, default: int) -> int:
            try:
                return int(v)
            except (TypeError, ValueError):
                return default

        return cls(
            users={str(k): _int(v, 0) for k, v in (c.get("users") or {}).items()},
            users_default=_int(c.get("users_default"), 0),
            events={str(k): _int(v, 0) for k, v in (c.get("events") or {}).items()},
            events_default=_int(c.get("events_default"), 0),
            state_default=_int(c.get("state_default"), 50),
            invite=_int(c.get("invite"), 0),
        )

    def user_level(self, user_id: str) -> int:
        return self.users.get(user_id, self.users_default)

    def event_level(self, event_type: str, state: bool = False) -> int:
        if event_type in self.events:
            return self.events[event_type]
        return self.state_default if state else self.events_default

    def can_invite(self, user_id: str) -> bool:
        return self.user_level(user_id) >= self.invite


@dataclass(frozen=True)
class RoomState:
    """Display metadata for one room. Missing state events are None."""

    room_id: str
    name: Optional[str] = None
    canonical_alias: Optional[str] = None
    join_rule: Optional[str] = None


# ---------------------------
# Events
# ---------------------------

@dataclass(frozen=True)
class MemberJoin:
    event_id: str
    room_id: str
    user_id: str
    origin_server_ts: int  # milliseconds


@dataclass(frozen=True)
class Reaction:
    event_id: str
    room_id: str
    sender: str
    target_event_id: str
    key: str


@dataclass(frozen=True)
class OtherEvent:
    event_id: str
    room_id: str
    event_type: str


RoomEvent = Union[MemberJoin, Reaction, OtherEvent]


def classify_event(room_id: str, raw: Dict[str, Any]) -> RoomEvent:
    """Turn one raw timeline event into a tagged event.

    A member event only counts as a join when the membership *changes* to
    join; display name and avatar updates keep membership=join and are
    reported as `OtherEvent`.
    """
    event_id = str(raw.get("event_id", ""))
    event_type = str(raw.get("type", ""))
    content = raw.get("content") or {}

    if event_type == MEMBER_EVENT and content.get("membership") == "join":
        prev = (raw.get("unsigned") or {}).get("prev_content") or {}
        if prev.get("membership") != "join" and raw.get("state_key"):
            return MemberJoin(
                event_id=event_id,
                room_id=room_id,
                user_id=str(raw["state_key"]),
                origin_server_ts=int(raw.get("origin_server_ts") or 0),
            )

    if event_type == REACTION_EVENT:
        rel = content.get("m.relates_to") or {}
        if rel.get("rel_type") == "m.annotation" and rel.get("event_id") and rel.get("key"):
            return Reaction(
                event_id=event_id,
                room_id=room_id,
                sender=str(raw.get("sender", "")),
                target_event_id=str(rel["event_id"]),
                key=str(rel["key"]),
            )

    return OtherEvent(event_id=event_id, room_id=room_id, event_type=event_type)


def events_from_sync(data: Dict[str, Any]) -> List[RoomEvent]:
    """Classify the joined-room timeline events of one /sync response, in order."""
    out: List[RoomEvent] = []
    joined = ((data or {}).get("rooms") or {}).get("join") or {}
    for room_id, room in joined.items():
        for raw in ((room or {}).get("timeline") or {}).get("events") or []:
            if isinstance(raw, dict):
                out.append(classify_event(str(room_id), raw))
    return out


# ---------------------------
# Collaborator protocols
# ---------------------------

class RoomService(Protocol):
    """Membership and room-state actions performed as the gatekeeper."""

    async def whoami(self) -> str:
        ...

    async def joined_rooms(self) -> List[str]:
        ...

    async def room_state(self, room_id: str) -> RoomState:
        ...

    async def power_levels(self, room_id: str) -> PowerLevels:
        ...

    async def set_user_power_level(self, room_id: str, user_id: str, level: int) -> None:
        ...

    async def invite(self, room_id: str, user_id: str) -> None:
        ...

    async def display_name(self, user_id: str) -> Optional[str]:
        ...

    async def send_reply(self, room_id: str, reply_to: str, body: str, html: Optional[str] = None) -> str:
        ...

    async def event_sender(self, room_id: str, event_id: str) -> str:
        ...


class EventStream(Protocol):
    def __aiter__(self) -> AsyncIterator[RoomEvent]:
        ...


async def ensure_identity(rooms: RoomService, expected_user_id: str) -> None:
    """Fail startup when the access token belongs to someone other than MATRIX_USER_ID."""
    actual = await rooms.whoami()
    if actual != expected_user_id:
        problem = f"MATRIX_ACCESS_TOKEN belongs to {actual}, not MATRIX_USER_ID {expected_user_id}"
        raise bouncer_error(BNC_E_CONFIG_INVALID, problem, http_status=500, problems=[problem])


# ---------------------------
# mautrix adapters
# ---------------------------

def _wrap(op: str, e: MatrixRequestError, **details: Any) -> BouncerError:
    not_found = isinstance(e, MNotFound) or getattr(e, "http_status", None) == 404
    return bouncer_error(
        BNC_E_ROOM_NOT_FOUND if not_found else BNC_E_ROOM_SERVICE,
        f"{op} failed: {e}",
        retryable=True,
        http_status=404 if not_found else 502,
        errcode=getattr(e, "errcode", None),
        **details,
    )


def build_client(homeserver: str, user_id: str, access_token: str, device_id: str = "") -> Client:
    return Client(
        mxid=UserID(user_id),
        device_id=DeviceID(device_id),
        base_url=homeserver,
        token=access_token,
    )


class MautrixRoomService:
    """`RoomService` on top of a mautrix `Client` with a restored access token."""

    def __init__(self, client: Client):
        self.client = client

    async def close(self) -> None:
        await self.client.api.session.close()

    async def whoami(self) -> str:
        try:
            resp = await self.client.whoami()
        except MatrixRequestError as e:
            raise _wrap("whoami", e)
        return str(resp.user_id)

    async def joined_rooms(self) -> List[str]:
        try:
            rooms = await self.client.get_joined_rooms()
        except MatrixRequestError as e:
            raise _wrap("joined_rooms", e)
        return [str(r) for r in rooms]

    async def _state_content(self, room_id: str, event_type: EventType) -> Optional[Dict[str, Any]]:
        try:
            content = await self.client.get_state_event(RoomID(room_id), event_type)
        except MNotFound:
            return None
        except MatrixRequestError as e:
            raise _wrap("get_state_event", e, room_id=room_id, event_type=str(event_type))
        return content.serialize() if hasattr(content, "serialize") else dict(content)

    async def room_state(self, room_id: str) -> RoomState:
        name = await self._state_content(room_id, EventType.ROOM_NAME)
        alias = await self._state_content(room_id, EventType.ROOM_CANONICAL_ALIAS)
        rules = await self._state_content(room_id, EventType.ROOM_JOIN_RULES)
        return RoomState(
            room_id=room_id,
            name=(name or {}).get("name") or None,
            canonical_alias=(alias or {}).get("alias") or None,
            join_rule=(rules or {}).get("join_rule") or None,
        )

    async def power_levels(self, room_id: str) -> PowerLevels:
        return PowerLevels.from_content(await self._state_content(room_id, EventType.ROOM_POWER_LEVELS))

    async def set_user_power_level(self, room_id: str, user_id: str, level: int) -> None:
        # Read-modify-write of the current content so unrelated keys survive.
        content = await self._state_content(room_id, EventType.ROOM_POWER_LEVELS) or {}
        users = dict(content.get("users") or {})
        users[user_id] = int(level)
        content["users"] = users
        try:
            await self.client.send_state_event(RoomID(room_id), EventType.ROOM_POWER_LEVELS, content)
        except MatrixRequestError as e:
            raise _wrap("set_power_level", e, room_id=room_id, user_id=user_id)

    async def invite(self, room_id: str, user_id: str) -> None:
        try:
            await self.client.invite_user(RoomID(room_id), UserID(user_id))
        except MatrixRequestError as e:
            raise _wrap("invite", e, room_id=room_id, user_id=user_id)

    async def display_name(self, user_id: str) -> Optional[str]:
        try:
            profile = await self.client.get_profile(UserID(user_id))
        except MatrixRequestError as e:
            raise _wrap("get_profile", e, user_id=user_id)
        return profile.displayname or None

    async def send_reply(self, room_id: str, reply_to: str, body: str, html: Optional[str] = None) -> str:
        content: Dict[str, Any] = {
            "msgtype": "m.text",
            "body": body,
            "m.relates_to": {"m.in_reply_to": {"event_id": reply_to}},
        }
        if html:
            content["format"] = "org.matrix.custom.html"
            content["formatted_body"] = html
        try:
            event_id = await self.client.send_message_event(RoomID(room_id), EventType.ROOM_MESSAGE, content)
        except MatrixRequestError as e:
            raise _wrap("send_message", e, room_id=room_id)
        return str(event_id)

    async def event_sender(self, room_id: str, event_id: str) -> str:
        try:
            evt = await self.client.get_event(RoomID(room_id), EventID(event_id))
        except MatrixRequestError as e:
            raise _wrap("get_event", e, room_id=room_id, event_id=event_id)
        return str(evt.sender)


class MautrixEventStream:
    """Long-poll `/sync` and yield classified timeline events.

    Sync failures are logged and retried with capped exponential backoff; the
    stream only ends when the consuming task is cancelled.
    """

    def __init__(
        self,
        client: Client,
        rooms: Optional[Iterable[str]] = None,
        timeout_ms: int = 30000,
        max_backoff_seconds: float = 60.0,
        initial_backoff_seconds: float = 1.0,
    ):
        self.client = client
        self.rooms = set(rooms) if rooms else None
        self.timeout_ms = int(timeout_ms)
        self.max_backoff_seconds = float(max_backoff_seconds)
        self.initial_backoff_seconds = float(initial_backoff_seconds)
        self.next_batch: Optional[str] = None

    async def _sync_once(self) -> Dict[str, Any]:
        return await self.client.sync(since=self.next_batch, timeout=self.timeout_ms)

    async def __aiter__(self) -> AsyncIterator[RoomEvent]:
        backoff = self.initial_backoff_seconds
        while True:
            try:
                data = await self._sync_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("sync failed (%s); retrying in %.0fs", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff_seconds)
                continue
            backoff = self.initial_backoff_seconds
            self.next_batch = data.get("next_batch") or self.next_batch
            for event in events_from_sync(data):
                if self.rooms is None or event.room_id in self.rooms:
                    yield event

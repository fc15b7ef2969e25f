"""Room directory snapshot.

Built once at startup from the rooms the gatekeeper has joined, keeping only
rooms where its power level reaches the room's invite level. The snapshot is
immutable afterwards; the gate reads it to decide which rooms are eligible.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import BouncerError
from .matrix import RoomService, RoomState

logger = logging.getLogger(__name__)


class JoinRule(str, Enum):
    PUBLIC = "public"
    INVITE = "invite"
    RESTRICTED = "restricted"
    KNOCK = "knock"
    PRIVATE = "private"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "JoinRule":
        # No m.room.join_rules state means "invite" per the Matrix protocol.
        if not raw:
            return cls.INVITE
        try:
            return cls(raw)
        except ValueError:
            return cls.PRIVATE


@dataclass(frozen=True)
class RoomInfo:
    room_id: str
    canonical_alias: Optional[str] = None
    display_name: Optional[str] = None
    join_rule: JoinRule = JoinRule.INVITE

    @classmethod
    def from_state(cls, state: RoomState) -> "RoomInfo":
        return cls(
            room_id=state.room_id,
            canonical_alias=state.canonical_alias,
            display_name=state.name,
            join_rule=JoinRule.parse(state.join_rule),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["join_rule"] = self.join_rule.value
        return d


class RoomDirectory:
    """Read-only mapping room_id -> RoomInfo."""

    def __init__(self, rooms: Iterable[RoomInfo] = ()):
        self._rooms: Mapping[str, RoomInfo] = {r.room_id: r for r in rooms}

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def __iter__(self) -> Iterator[RoomInfo]:
        return iter(self.list())

    def get(self, room_id: str) -> Optional[RoomInfo]:
        return self._rooms.get(room_id)

    def list(self) -> List[RoomInfo]:
        return sorted(self._rooms.values(), key=lambda r: ((r.display_name or "").lower(), r.room_id))

    @classmethod
    async def build(cls, rooms: RoomService, own_user_id: str) -> "RoomDirectory":
        """Enumerate joined rooms and keep those the gatekeeper may invite into.

        A room whose state cannot be read is skipped with a warning rather
        than aborting startup; failing to list joined rooms at all propagates.
        """
        eligible: List[RoomInfo] = []
        for room_id in await rooms.joined_rooms():
            try:
                levels = await rooms.power_levels(room_id)
                if not levels.can_invite(own_user_id):
                    logger.debug("skipping %s: no invite permission", room_id)
                    continue
                state = await rooms.room_state(room_id)
            except BouncerError as e:
                logger.warning("skipping %s: %s", room_id, e)
                continue
            eligible.append(RoomInfo.from_state(state))
        logger.info("room directory built: %d eligible room(s)", len(eligible))
        return cls(eligible)

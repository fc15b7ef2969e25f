"""Privileged invite action: profile lookup plus one invite call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import PROFILE_FAIL, PROFILE_FAILURE_POLICIES, PROFILE_IGNORE
from .errors import BouncerError
from .matrix import RoomService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InviteResult:
    room_id: str
    user_id: str
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.display_name and self.display_name != self.user_id:
            return f"{self.display_name} ({self.user_id})"
        return self.user_id


class InviteAction:
    """Invite a user into a room as the gatekeeper.

    The display name only feeds the confirmation message. With
    `profile_failure_policy="fail"` a failed profile lookup aborts the invite;
    with `"ignore"` it is logged and the bare user id is used instead.

    Not idempotent: inviting an already-invited or joined user surfaces the
    homeserver's error unchanged.
    """

    def __init__(self, rooms: RoomService, profile_failure_policy: str = PROFILE_FAIL):
        if profile_failure_policy not in PROFILE_FAILURE_POLICIES:
            raise ValueError(f"unknown profile failure policy {profile_failure_policy!r}")
        self.rooms = rooms
        self.profile_failure_policy = profile_failure_policy

    async def _display_name(self, user_id: str) -> Optional[str]:
        try:
            return await self.rooms.display_name(user_id)
        except BouncerError as e:
            if self.profile_failure_policy != PROFILE_IGNORE:
                raise
            logger.info("profile lookup for %s failed, continuing: %s", user_id, e)
            return None

    async def invite(self, room_id: str, user_id: str) -> InviteResult:
        display_name = await self._display_name(user_id)
        await self.rooms.invite(room_id, user_id)
        logger.info("invited %s into %s", user_id, room_id)
        return InviteResult(room_id=room_id, user_id=user_id, display_name=display_name)

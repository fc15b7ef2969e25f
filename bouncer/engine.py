"""Join Challenge Engine.

For every member join in a watched room the gatekeeper replies with a message
naming the user and the symbol assigned to them. Once the user reacts to that
message with their own symbol, their power level is raised to the room's
`events_default` so they can talk. The per-user protocol is therefore just

    Unverified --(correct reaction on the gatekeeper's message)--> Verified

and nothing is stored: the symbol is recomputed from the user id, and the
"message authored by the gatekeeper" check is made against the homeserver.

Joins older than the staleness bound are dropped, which keeps backfilled or
replayed history (e.g. the first sync after a restart) from re-challenging
everybody.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from . import metrics
from .challenge import challenge_symbol, is_correct_response
from .errors import BouncerError
from .matrix import (
    MESSAGE_EVENT,
    POWER_LEVELS_EVENT,
    REACTION_EVENT,
    EventStream,
    MemberJoin,
    Reaction,
    RoomEvent,
    RoomService,
)
from .ops_stats import OPS_STATS

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_SECONDS = 600.0


def challenge_text(user_id: str, symbol: str) -> str:
    return (
        f"Welcome {user_id}! To be able to send messages in this room, "
        f"react to this message with {symbol}"
    )


def challenge_html(user_id: str, symbol: str) -> str:
    pill = f'<a href="https://matrix.to/#/{html.escape(user_id, quote=True)}">{html.escape(user_id)}</a>'
    return f"Welcome {pill}! To be able to send messages in this room, react to this message with {symbol}"


class JoinChallengeEngine:
    def __init__(
        self,
        rooms: RoomService,
        own_user_id: str,
        watched_rooms: Iterable[str],
        *,
        staleness_seconds: float = DEFAULT_STALENESS_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.rooms = rooms
        self.own_user_id = own_user_id
        self.watched_rooms = frozenset(watched_rooms)
        self.staleness_seconds = float(staleness_seconds)
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()
        # room_id -> lock serialising power-level read-modify-write
        self._power_locks: Dict[str, asyncio.Lock] = {}

    def _power_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._power_locks.get(room_id)
        if lock is None:
            lock = self._power_locks[room_id] = asyncio.Lock()
        return lock

    def _result(self, result: str) -> None:
        metrics.record_challenge_event(result)

    # ---------------------------
    # Event handlers
    # ---------------------------

    async def handle(self, event: RoomEvent) -> None:
        """Process one event. Never raises."""
        if event.room_id not in self.watched_rooms:
            return
        try:
            if isinstance(event, MemberJoin):
                await self._on_join(event)
            elif isinstance(event, Reaction):
                await self._on_reaction(event)
        except Exception:
            OPS_STATS.record_handler_error()
            self._result("error")
            logger.exception("failed to handle %s %s in %s", type(event).__name__, event.event_id, event.room_id)

    async def _on_join(self, event: MemberJoin) -> None:
        if event.user_id == self.own_user_id:
            return
        age_ms = self._clock() * 1000 - event.origin_server_ts
        if age_ms > self.staleness_seconds * 1000:
            OPS_STATS.record_stale_join()
            self._result("stale")
            logger.debug("dropping stale join of %s in %s (%.0fs old)", event.user_id, event.room_id, age_ms / 1000)
            return

        symbol = challenge_symbol(event.user_id)
        await self.rooms.send_reply(
            event.room_id,
            event.event_id,
            challenge_text(event.user_id, symbol),
            html=challenge_html(event.user_id, symbol),
        )
        OPS_STATS.record_challenge_posted()
        self._result("posted")
        logger.info("challenged %s in %s", event.user_id, event.room_id)

    def _ignore(self, event: Reaction, why: str) -> None:
        OPS_STATS.record_reaction_ignored()
        self._result("ignored")
        logger.debug("ignoring reaction %s from %s: %s", event.event_id, event.sender, why)

    async def _on_reaction(self, event: Reaction) -> None:
        if event.sender == self.own_user_id:
            return
        if not is_correct_response(event.sender, event.key):
            return self._ignore(event, "wrong symbol")
        target_sender = await self.rooms.event_sender(event.room_id, event.target_event_id)
        if target_sender != self.own_user_id:
            return self._ignore(event, "target not authored by gatekeeper")

        # The write replaces the whole power-levels content, so concurrent
        # promotions in one room must not interleave.
        async with self._power_lock(event.room_id):
            levels = await self.rooms.power_levels(event.room_id)
            target_level = levels.events_default
            if levels.user_level(event.sender) >= target_level:
                return self._ignore(event, "already at or above events_default")
            await self.rooms.set_user_power_level(event.room_id, event.sender, target_level)
        OPS_STATS.record_promotion()
        metrics.record_promotion()
        self._result("promoted")
        logger.info("promoted %s in %s to %d", event.sender, event.room_id, target_level)

    # ---------------------------
    # Loop
    # ---------------------------

    def _spawn(self, event: RoomEvent) -> None:
        task = asyncio.ensure_future(self.handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight handler task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, stream: EventStream) -> None:
        """Consume `stream` until it ends (or the task is cancelled)."""
        logger.info("challenge engine watching %d room(s)", len(self.watched_rooms))
        try:
            async for event in stream:
                self._spawn(event)
        finally:
            await self.drain()

    # ---------------------------
    # Startup self-check
    # ---------------------------

    async def self_check(self, rooms: Optional[Iterable[str]] = None) -> List[str]:
        """Return advisory warnings about room configurations that defeat the challenge."""
        warnings: List[str] = []
        for room_id in sorted(rooms if rooms is not None else self.watched_rooms):
            try:
                levels = await self.rooms.power_levels(room_id)
            except BouncerError as e:
                warnings.append(f"{room_id}: cannot read power levels ({e})")
                continue
            if levels.users_default >= levels.event_level(MESSAGE_EVENT):
                warnings.append(
                    f"{room_id}: users_default ({levels.users_default}) already allows sending messages "
                    f"({levels.event_level(MESSAGE_EVENT)}); the challenge has no effect"
                )
            if levels.event_level(REACTION_EVENT) > levels.users_default:
                warnings.append(
                    f"{room_id}: reactions require level {levels.event_level(REACTION_EVENT)} "
                    f"but new users have {levels.users_default}; nobody can answer the challenge"
                )
            own = levels.user_level(self.own_user_id)
            needed = levels.event_level(POWER_LEVELS_EVENT, state=True)
            if own < needed:
                warnings.append(
                    f"{room_id}: gatekeeper level {own} is below the {needed} needed to change power levels"
                )
        for w in warnings:
            logger.warning("self-check: %s", w)
        return warnings

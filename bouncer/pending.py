"""In-memory store for invites parked behind the identity-provider redirect.

Each entry is keyed by an unguessable token and can be taken exactly once.
Entries expire after a TTL and the oldest entries are evicted when the store
is full, so abandoned flows do not accumulate forever. Nothing survives a
restart.

All map operations happen under one lock; the lock is never held across a
network call.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple


@dataclass(frozen=True)
class PendingInvite:
    room_id: str
    user_id: str
    proof_token: str
    created_at: float


@dataclass(frozen=True)
class PendingStoreConfig:
    ttl_seconds: int = 900
    max_items: int = 10000


class PendingInviteStore:
    def __init__(
        self,
        config: Optional[PendingStoreConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        token_factory: Callable[[], str] = lambda: secrets.token_urlsafe(32),
    ):
        self.config = config or PendingStoreConfig()
        self._clock = clock
        self._token_factory = token_factory
        self._lock = threading.Lock()
        # token -> (invite, expires_at); insertion order == expiry order
        self._entries: "OrderedDict[str, Tuple[PendingInvite, float]]" = OrderedDict()

    def _purge(self, now: float) -> None:
        # OrderedDict oldest-first
        while self._entries:
            _, (_, exp) = next(iter(self._entries.items()))
            if exp > now:
                break
            self._entries.popitem(last=False)

    def _evict_if_needed(self) -> None:
        while len(self._entries) > self.config.max_items:
            self._entries.popitem(last=False)

    def put(self, room_id: str, user_id: str, proof_token: str = "") -> str:
        """Park an invite and return the fresh token that identifies it."""
        now = self._clock()
        with self._lock:
            self._purge(now)
            token = self._token_factory()
            while token in self._entries:
                token = self._token_factory()
            invite = PendingInvite(room_id=room_id, user_id=user_id, proof_token=proof_token, created_at=now)
            self._entries[token] = (invite, now + self.config.ttl_seconds)
            self._evict_if_needed()
        return token

    def take(self, token: str) -> Optional[PendingInvite]:
        """Atomically remove and return the invite for `token`.

        Returns None for unknown, already-taken or expired tokens.
        """
        if not token:
            return None
        now = self._clock()
        with self._lock:
            self._purge(now)
            item = self._entries.pop(token, None)
        if item is None:
            return None
        invite, exp = item
        if exp <= now:
            return None
        return invite

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            self._purge(now)
            return len(self._entries)

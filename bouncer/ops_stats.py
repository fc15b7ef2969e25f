"""Operational statistics for the bouncer.

Lightweight in-memory counters and a snapshot for the `/v1/stats` endpoint.

Notes
-----
- Counters reset on process restart.
- Shared between the invite gate and the challenge engine when both run in
  one process; each process otherwise reports only its own side.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Invite gate
    invites_total: int = 0
    invite_outcomes: Dict[str, int] = field(default_factory=dict)  # completed/redirect/<error code>
    callbacks_total: int = 0
    pending_created_total: int = 0

    # Join challenge engine
    challenges_posted_total: int = 0
    stale_joins_dropped_total: int = 0
    promotions_total: int = 0
    reactions_ignored_total: int = 0
    handler_errors_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_invite_outcome(self, outcome: str) -> None:
        with self._lock:
            self._c.invites_total += 1
            self._inc_map(self._c.invite_outcomes, outcome or "unknown")

    def record_callback(self) -> None:
        with self._lock:
            self._c.callbacks_total += 1

    def record_pending_created(self) -> None:
        with self._lock:
            self._c.pending_created_total += 1

    def record_challenge_posted(self) -> None:
        with self._lock:
            self._c.challenges_posted_total += 1

    def record_stale_join(self) -> None:
        with self._lock:
            self._c.stale_joins_dropped_total += 1

    def record_promotion(self) -> None:
        with self._lock:
            self._c.promotions_total += 1

    def record_reaction_ignored(self) -> None:
        with self._lock:
            self._c.reactions_ignored_total += 1

    def record_handler_error(self) -> None:
        with self._lock:
            self._c.handler_errors_total += 1

    def reset(self) -> None:
        with self._lock:
            self._start_monotonic = time.monotonic()
            self._c = _Counters()

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "invites_total": c.invites_total,
                "invite_outcomes": dict(c.invite_outcomes),
                "callbacks_total": c.callbacks_total,
                "pending_created_total": c.pending_created_total,
                "challenges_posted_total": c.challenges_posted_total,
                "stale_joins_dropped_total": c.stale_joins_dropped_total,
                "promotions_total": c.promotions_total,
                "reactions_ignored_total": c.reactions_ignored_total,
                "handler_errors_total": c.handler_errors_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()

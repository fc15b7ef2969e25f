"""Invite Gate: the orchestration state machine behind the web form.

    submit_invite(room, user, proof)
        |-- malformed user id / unknown room ----------> Rejected 400
        |-- verifier says no ---------------------------> Rejected 403
        |-- policy direct -> privileged invite --------> Completed
        '-- policy github -> park PendingInvite -------> Redirect(authorize url)

    complete_callback(code, state)
        |-- no such pending token ---------------------> Rejected 400
        |-- provider exchange / profile failure -------> Rejected 502
        |-- young account on a high-abuse server ------> Rejected 403
        '-- privileged invite -------------------------> Completed

Both operations return an outcome value instead of raising; collaborator
`BouncerError`s become `Rejected` with the error's code and status. Unknown
rooms and malformed ids are rejected before any collaborator is called.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union

from . import metrics
from .config import POLICY_DIRECT, POLICY_GITHUB, BouncerConfig, is_user_id
from .errors import (
    BNC_E_BAD_REQUEST,
    BNC_E_INVALID_STATE,
    BNC_E_LIKELY_ABUSIVE,
    BNC_E_UNKNOWN_ROOM,
    BNC_E_VERIFICATION_FAILED,
    BouncerError,
)
from .identity import AccountAgePolicy, GitHubIdentityProvider, IdentityProvider
from .invite import InviteAction, InviteResult
from .matrix import RoomService
from .ops_stats import OPS_STATS
from .pending import PendingInviteStore, PendingStoreConfig
from .rooms import RoomDirectory, RoomInfo
from .turnstile import HumanVerifier, TurnstileVerifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completed:
    result: InviteResult

    @property
    def message(self) -> str:
        return f"Invited {self.result.label} to {self.result.room_id}."


@dataclass(frozen=True)
class Redirect:
    url: str


@dataclass(frozen=True)
class Rejected:
    code: str
    reason: str
    http_status: int = 400
    retryable: bool = False


GateOutcome = Union[Completed, Redirect, Rejected]


class InviteGate:
    """Decide whether a visitor gets invited, and invite them.

    With `identity_provider` set the gate runs the identity-linking flow
    (policy `github`); without it, a verified visitor is invited directly.
    """

    def __init__(
        self,
        directory: RoomDirectory,
        verifier: HumanVerifier,
        inviter: InviteAction,
        *,
        identity_provider: Optional[IdentityProvider] = None,
        age_policy: Optional[AccountAgePolicy] = None,
        pending: Optional[PendingInviteStore] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.directory = directory
        self.verifier = verifier
        self.inviter = inviter
        self.identity_provider = identity_provider
        self.age_policy = age_policy or AccountAgePolicy.create(["matrix.org"], 30)
        self.pending = pending or PendingInviteStore()
        self._now = now

    @property
    def policy(self) -> str:
        return POLICY_GITHUB if self.identity_provider is not None else POLICY_DIRECT

    @classmethod
    def from_config(cls, config: BouncerConfig, rooms: RoomService, directory: RoomDirectory) -> "InviteGate":
        identity_provider = None
        if config.identity_linking and config.github is not None:
            identity_provider = GitHubIdentityProvider(
                config.github.client_id,
                config.github.client_secret,
                config.github.redirect_url,
                timeout_seconds=config.http_timeout_seconds,
            )
        return cls(
            directory,
            TurnstileVerifier(config.turnstile_secret_key, timeout_seconds=config.http_timeout_seconds),
            InviteAction(rooms, config.profile_failure_policy),
            identity_provider=identity_provider,
            age_policy=AccountAgePolicy.create(config.high_abuse_servers, config.min_account_age_days),
            pending=PendingInviteStore(
                PendingStoreConfig(ttl_seconds=config.pending_ttl_seconds, max_items=config.pending_max_items)
            ),
        )

    # ---------------------------
    # Outcome bookkeeping
    # ---------------------------

    def _record(self, outcome: GateOutcome) -> GateOutcome:
        if isinstance(outcome, Completed):
            label = "completed"
        elif isinstance(outcome, Redirect):
            label = "redirect"
        else:
            label = outcome.code
        OPS_STATS.record_invite_outcome(label)
        metrics.record_invite_outcome(label)
        return outcome

    def _collaborator_failure(self, e: BouncerError, reason: str, **ctx: str) -> Rejected:
        logger.error("%s: %s (%s)", reason, e, ", ".join(f"{k}={v}" for k, v in ctx.items()))
        return Rejected(code=e.code, reason=reason, http_status=int(e.http_status or 502), retryable=True)

    async def _invite(self, room_id: str, user_id: str) -> GateOutcome:
        try:
            result = await self.inviter.invite(room_id, user_id)
        except BouncerError as e:
            return self._record(self._collaborator_failure(e, "invite failed", room=room_id, user=user_id))
        return self._record(Completed(result))

    # ---------------------------
    # Operations
    # ---------------------------

    def list_eligible_rooms(self) -> List[RoomInfo]:
        return self.directory.list()

    async def submit_invite(
        self,
        room_id: str,
        user_id: str,
        proof_token: str,
        remote_ip: Optional[str] = None,
    ) -> GateOutcome:
        user_id = (user_id or "").strip()
        if not is_user_id(user_id):
            logger.info("rejecting malformed user id %r", user_id)
            return self._record(Rejected(BNC_E_BAD_REQUEST, "invalid user id", 400))
        if room_id not in self.directory:
            logger.info("rejecting invite of %s into unknown room %r", user_id, room_id)
            return self._record(Rejected(BNC_E_UNKNOWN_ROOM, "unknown room", 400))

        try:
            verified = await self.verifier.verify(proof_token, remote_ip)
        except BouncerError as e:
            logger.error("human verification unavailable for %s -> %s: %s", user_id, room_id, e)
            return self._record(Rejected(e.code, "verification failed", int(e.http_status or 502), retryable=True))
        if not verified:
            logger.warning("human verification failed for %s -> %s", user_id, room_id)
            return self._record(Rejected(BNC_E_VERIFICATION_FAILED, "verification failed", 403))

        if self.identity_provider is None:
            return await self._invite(room_id, user_id)

        token = self.pending.put(room_id, user_id, proof_token)
        OPS_STATS.record_pending_created()
        logger.info("parked invite of %s into %s pending identity linking", user_id, room_id)
        return self._record(Redirect(self.identity_provider.authorization_url(token)))

    async def complete_callback(self, code: str, state: str) -> GateOutcome:
        OPS_STATS.record_callback()
        if self.identity_provider is None:
            return self._record(Rejected(BNC_E_BAD_REQUEST, "identity linking is not enabled", 404))
        if not code or not state:
            # Leave the parked entry alone; a retry with both params can still succeed.
            logger.info("callback missing code or state")
            return self._record(Rejected(BNC_E_BAD_REQUEST, "missing code or state", 400))

        parked = self.pending.take(state)
        if parked is None:
            logger.info("callback with invalid or expired state")
            return self._record(Rejected(BNC_E_INVALID_STATE, "invalid or expired token", 400))

        try:
            access_token = await self.identity_provider.exchange_code(code)
            identity = await self.identity_provider.fetch_identity(access_token)
        except BouncerError as e:
            return self._record(
                self._collaborator_failure(e, "identity provider error", user=parked.user_id)
            )

        if self.age_policy.is_likely_abusive(parked.user_id, identity, self._now()):
            logger.warning(
                "likely abusive: %s linked %s account %r created %s",
                parked.user_id,
                identity.provider,
                identity.login,
                identity.created_at.isoformat(),
            )
            return self._record(Rejected(BNC_E_LIKELY_ABUSIVE, "likely abusive account", 403))

        return await self._invite(parked.room_id, parked.user_id)

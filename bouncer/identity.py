"""Linked-identity age heuristic (GitHub OAuth).

Freshly registered accounts on large public homeservers are the cheapest
thing for a spammer to mass-produce. When the identity-linking policy is on,
the visitor has to log in with GitHub and the gate looks at how old that
GitHub account is. It is a heuristic: false positives and negatives are
expected.

Flow:
    1. `authorization_url(state)` - where the browser is redirected
    2. `exchange_code(code)`      - code -> access token
    3. `fetch_identity(token)`    - login + account creation time
    4. `AccountAgePolicy.is_likely_abusive(user_id, identity, now)`
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional, Protocol
from urllib.parse import urlencode

import httpx

from .config import server_name
from .errors import BNC_E_IDENTITY_PROVIDER, bouncer_error

logger = logging.getLogger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"


@dataclass(frozen=True)
class LinkedIdentity:
    provider: str
    login: str
    created_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at


class IdentityProvider(Protocol):
    name: str

    def authorization_url(self, state: str) -> str:
        ...

    async def exchange_code(self, code: str) -> str:
        ...

    async def fetch_identity(self, access_token: str) -> LinkedIdentity:
        ...


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by the GitHub API (`...Z`)."""
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _provider_error(message: str) -> Exception:
    return bouncer_error(BNC_E_IDENTITY_PROVIDER, message, retryable=True, http_status=502)


class GitHubIdentityProvider:
    name = "github"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        *,
        timeout_seconds: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.timeout_seconds = float(timeout_seconds)
        self.http = http

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_url,
                "state": state,
                "allow_signup": "false",
            }
        )
        return f"{GITHUB_AUTHORIZE_URL}?{query}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            if self.http is not None:
                resp = await self.http.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
            decoded = resp.json()
        except httpx.HTTPStatusError as e:
            raise _provider_error(f"{url}: HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            raise _provider_error(f"{url}: {type(e).__name__}: {e}")
        if not isinstance(decoded, dict):
            raise _provider_error(f"{url}: expected a JSON object")
        return decoded

    async def exchange_code(self, code: str) -> str:
        if not code:
            raise _provider_error("missing authorization code")
        body = await self._request(
            "POST",
            GITHUB_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_url,
            },
            headers={"Accept": "application/json"},
        )
        # GitHub reports bad codes with HTTP 200 and an `error` field.
        token = body.get("access_token")
        if body.get("error") or not isinstance(token, str) or not token:
            raise _provider_error(f"code exchange rejected: {body.get('error', 'no access_token')}")
        return token

    async def fetch_identity(self, access_token: str) -> LinkedIdentity:
        body = await self._request(
            "GET",
            GITHUB_USER_URL,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {access_token}",
            },
        )
        login = body.get("login")
        created_at = body.get("created_at")
        if not isinstance(login, str) or not isinstance(created_at, str):
            raise _provider_error("profile is missing login/created_at")
        try:
            created = parse_timestamp(created_at)
        except ValueError:
            raise _provider_error(f"unparseable created_at {created_at!r}")
        logger.debug("linked %s account %s created %s", self.name, login, created.isoformat())
        return LinkedIdentity(provider=self.name, login=login, created_at=created)


@dataclass(frozen=True)
class AccountAgePolicy:
    """Reject young linked accounts asking for identities on high-abuse servers."""

    high_abuse_servers: FrozenSet[str]
    min_account_age: timedelta

    @classmethod
    def create(cls, servers: Iterable[str], min_age_days: float) -> "AccountAgePolicy":
        return cls(
            high_abuse_servers=frozenset(s.lower() for s in servers),
            min_account_age=timedelta(days=float(min_age_days)),
        )

    def is_high_abuse_origin(self, user_id: str) -> bool:
        return server_name(user_id).lower() in self.high_abuse_servers

    def is_likely_abusive(self, user_id: str, identity: LinkedIdentity, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.is_high_abuse_origin(user_id) and identity.age(now) < self.min_account_age

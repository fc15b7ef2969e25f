"""Environment configuration for the bouncer.

Everything is read once at startup and validated eagerly. Unlike most of the
runtime, configuration problems are fatal: `BouncerConfig.from_env()` collects
every missing or malformed value and raises a single `BouncerError` with code
`BNC_E_CONFIG_INVALID` so the operator sees the whole list at once.

Env vars:
  - MATRIX_HOMESERVER, MATRIX_USER_ID, MATRIX_ACCESS_TOKEN (required)
  - MATRIX_DEVICE_ID (optional)
  - TURNSTILE_SITE_KEY, TURNSTILE_SECRET_KEY (default: Cloudflare test keys)
  - BOUNCER_INVITE_POLICY: direct|github (default direct)
  - GITHUB_CLIENT_ID, GITHUB_CLIENT_SECRET, GITHUB_REDIRECT_URL (policy=github)
  - BOUNCER_HIGH_ABUSE_SERVERS (default matrix.org)
  - BOUNCER_MIN_ACCOUNT_AGE_DAYS (default 30)
  - BOUNCER_PENDING_TTL_SECONDS (default 900)
  - BOUNCER_PENDING_MAX_ITEMS (default 10000)
  - BOUNCER_PROFILE_FAILURE_POLICY: fail|ignore (default fail)
  - BOUNCER_PROTECTED_ROOMS (comma separated room ids)
  - BOUNCER_CHALLENGE_STALENESS_SECONDS (default 600)
  - BOUNCER_LISTEN_ADDRESS (default 127.0.0.1:8000)
  - BOUNCER_HTTP_TIMEOUT_SECONDS (default 10)
  - BOUNCER_STATS_TOKEN (optional)
  - BOUNCER_METRICS_ENABLED (default 1)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .errors import BNC_E_CONFIG_INVALID, bouncer_error

# Cloudflare's documented "always passes" test keys.
TURNSTILE_TEST_SITE_KEY = "1x00000000000000000000AA"
TURNSTILE_TEST_SECRET_KEY = "1x0000000000000000000000000000000AA"

POLICY_DIRECT = "direct"
POLICY_GITHUB = "github"
INVITE_POLICIES = (POLICY_DIRECT, POLICY_GITHUB)

PROFILE_FAIL = "fail"
PROFILE_IGNORE = "ignore"
PROFILE_FAILURE_POLICIES = (PROFILE_FAIL, PROFILE_IGNORE)

USER_ID_RE = re.compile(r"^@[^:\s]+:[^\s]+$")
ROOM_ID_RE = re.compile(r"^![^:\s]+:[^\s]+$")


def is_user_id(value: str) -> bool:
    return bool(USER_ID_RE.match(value or ""))


def is_room_id(value: str) -> bool:
    return bool(ROOM_ID_RE.match(value or ""))


def server_name(user_id: str) -> str:
    """Return the server part of a Matrix identifier (`@a:b.org` -> `b.org`)."""
    return user_id.split(":", 1)[1] if ":" in user_id else ""


def parse_listen_address(value: str) -> Tuple[str, int]:
    """Parse `host:port` (IPv6 hosts in brackets)."""
    s = (value or "").strip()
    if not s or ":" not in s:
        raise ValueError("expected host:port")
    host, port_str = s.rsplit(":", 1)
    host = host.strip("[]")
    if not host:
        raise ValueError("missing host")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError("port out of range")
    return host, port


def _env_bool(raw: Optional[str], default: bool) -> bool:
    v = (raw or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _split_csv(raw: Optional[str]) -> List[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


@dataclass(frozen=True)
class GitHubOAuthConfig:
    client_id: str
    client_secret: str
    redirect_url: str


@dataclass(frozen=True)
class BouncerConfig:
    """Validated process configuration."""

    homeserver: str
    user_id: str
    access_token: str
    device_id: str = ""
    turnstile_site_key: str = TURNSTILE_TEST_SITE_KEY
    turnstile_secret_key: str = TURNSTILE_TEST_SECRET_KEY
    invite_policy: str = POLICY_DIRECT
    github: Optional[GitHubOAuthConfig] = None
    high_abuse_servers: Tuple[str, ...] = ("matrix.org",)
    min_account_age_days: float = 30.0
    pending_ttl_seconds: int = 900
    pending_max_items: int = 10000
    profile_failure_policy: str = PROFILE_FAIL
    protected_rooms: Tuple[str, ...] = field(default_factory=tuple)
    challenge_staleness_seconds: float = 600.0
    listen_host: str = "127.0.0.1"
    listen_port: int = 8000
    http_timeout_seconds: float = 10.0
    stats_token: str = ""
    metrics_enabled: bool = True

    @property
    def identity_linking(self) -> bool:
        return self.invite_policy == POLICY_GITHUB

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BouncerConfig":
        env = os.environ if environ is None else environ
        problems: List[str] = []

        def get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        def required(name: str) -> str:
            v = get(name)
            if not v:
                problems.append(f"{name} is required")
            return v

        def number(name: str, default: str, cast, lo=None, hi=None):
            raw = get(name, default)
            try:
                val = cast(raw)
            except ValueError:
                problems.append(f"{name} must be a number, got {raw!r}")
                return cast(default)
            if (lo is not None and val < lo) or (hi is not None and val > hi):
                problems.append(f"{name}={raw} out of range [{lo}, {hi}]")
            return val

        homeserver = required("MATRIX_HOMESERVER")
        if homeserver:
            parsed = urlparse(homeserver)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                problems.append(f"MATRIX_HOMESERVER must be an http(s) URL, got {homeserver!r}")

        user_id = required("MATRIX_USER_ID")
        if user_id and not is_user_id(user_id):
            problems.append(f"MATRIX_USER_ID must look like @user:server, got {user_id!r}")
        access_token = required("MATRIX_ACCESS_TOKEN")

        invite_policy = get("BOUNCER_INVITE_POLICY", POLICY_DIRECT).lower()
        if invite_policy not in INVITE_POLICIES:
            problems.append(f"BOUNCER_INVITE_POLICY must be one of {INVITE_POLICIES}, got {invite_policy!r}")

        github: Optional[GitHubOAuthConfig] = None
        if invite_policy == POLICY_GITHUB:
            client_id = required("GITHUB_CLIENT_ID")
            client_secret = required("GITHUB_CLIENT_SECRET")
            redirect_url = required("GITHUB_REDIRECT_URL")
            if redirect_url and urlparse(redirect_url).scheme not in ("http", "https"):
                problems.append(f"GITHUB_REDIRECT_URL must be an http(s) URL, got {redirect_url!r}")
            github = GitHubOAuthConfig(client_id=client_id, client_secret=client_secret, redirect_url=redirect_url)

        profile_policy = get("BOUNCER_PROFILE_FAILURE_POLICY", PROFILE_FAIL).lower()
        if profile_policy not in PROFILE_FAILURE_POLICIES:
            problems.append(
                f"BOUNCER_PROFILE_FAILURE_POLICY must be one of {PROFILE_FAILURE_POLICIES}, got {profile_policy!r}"
            )

        protected = _split_csv(env.get("BOUNCER_PROTECTED_ROOMS"))
        for room_id in protected:
            if not is_room_id(room_id):
                problems.append(f"BOUNCER_PROTECTED_ROOMS entry {room_id!r} is not a room id")

        listen = get("BOUNCER_LISTEN_ADDRESS", "127.0.0.1:8000")
        host, port = "127.0.0.1", 8000
        try:
            host, port = parse_listen_address(listen)
        except ValueError as e:
            problems.append(f"BOUNCER_LISTEN_ADDRESS {listen!r} invalid: {e}")

        high_abuse = tuple(s.lower() for s in _split_csv(env.get("BOUNCER_HIGH_ABUSE_SERVERS", "matrix.org")))

        cfg = dict(
            min_account_age_days=number("BOUNCER_MIN_ACCOUNT_AGE_DAYS", "30", float, lo=0),
            pending_ttl_seconds=number("BOUNCER_PENDING_TTL_SECONDS", "900", int, lo=1, hi=86400),
            pending_max_items=number("BOUNCER_PENDING_MAX_ITEMS", "10000", int, lo=1),
            challenge_staleness_seconds=number("BOUNCER_CHALLENGE_STALENESS_SECONDS", "600", float, lo=1),
            http_timeout_seconds=number("BOUNCER_HTTP_TIMEOUT_SECONDS", "10", float, lo=0.1),
        )

        if problems:
            raise bouncer_error(
                BNC_E_CONFIG_INVALID,
                "; ".join(problems),
                http_status=500,
                problems=problems,
            )

        return cls(
            homeserver=homeserver.rstrip("/"),
            user_id=user_id,
            access_token=access_token,
            device_id=get("MATRIX_DEVICE_ID"),
            turnstile_site_key=get("TURNSTILE_SITE_KEY", TURNSTILE_TEST_SITE_KEY),
            turnstile_secret_key=get("TURNSTILE_SECRET_KEY", TURNSTILE_TEST_SECRET_KEY),
            invite_policy=invite_policy,
            github=github,
            high_abuse_servers=high_abuse,
            profile_failure_policy=profile_policy,
            protected_rooms=tuple(protected),
            listen_host=host,
            listen_port=port,
            stats_token=get("BOUNCER_STATS_TOKEN"),
            metrics_enabled=_env_bool(env.get("BOUNCER_METRICS_ENABLED"), True),
            **cfg,
        )

"""Matrix bouncer package.

An access-control gatekeeper for Matrix rooms:

- Invite Gate: a web form that invites visitors after a Turnstile check and,
  optionally, a GitHub account-age heuristic
- Join Challenge Engine: a bot that asks every new member to react with a
  per-user symbol before they may send messages

Convenience imports
------------------
The package intentionally avoids heavy import-time side effects. For convenience,
these are available as top-level imports:

    from bouncer import InviteGate, JoinChallengeEngine, create_app

    from bouncer import BouncerConfig, BouncerError, challenge_symbol

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.1.0"
)

__all__ = [
    "__version__",
    "BouncerConfig",
    "BouncerError",
    "InviteGate",
    "JoinChallengeEngine",
    "challenge_symbol",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "BouncerConfig": ("bouncer.config", "BouncerConfig"),
    "BouncerError": ("bouncer.errors", "BouncerError"),
    "InviteGate": ("bouncer.gate", "InviteGate"),
    "JoinChallengeEngine": ("bouncer.engine", "JoinChallengeEngine"),
    "challenge_symbol": ("bouncer.challenge", "challenge_symbol"),
    "create_app": ("bouncer.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'bouncer' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))

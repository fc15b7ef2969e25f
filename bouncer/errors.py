"""Stable error taxonomy for the bouncer.

This module defines machine-readable error codes and a single exception type
used by the collaborator adapters, the invite gate and the HTTP layer.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Caller input
BNC_E_BAD_REQUEST = "BNC_E_BAD_REQUEST"
BNC_E_UNKNOWN_ROOM = "BNC_E_UNKNOWN_ROOM"
BNC_E_INVALID_STATE = "BNC_E_INVALID_STATE"

# Verification boundary
BNC_E_VERIFICATION_FAILED = "BNC_E_VERIFICATION_FAILED"
BNC_E_LIKELY_ABUSIVE = "BNC_E_LIKELY_ABUSIVE"

# Collaborators
BNC_E_VERIFICATION_UNAVAILABLE = "BNC_E_VERIFICATION_UNAVAILABLE"
BNC_E_IDENTITY_PROVIDER = "BNC_E_IDENTITY_PROVIDER"
BNC_E_ROOM_SERVICE = "BNC_E_ROOM_SERVICE"
BNC_E_ROOM_NOT_FOUND = "BNC_E_ROOM_NOT_FOUND"

# Startup
BNC_E_CONFIG_INVALID = "BNC_E_CONFIG_INVALID"


@dataclass
class BouncerError(Exception):
    """Base bouncer exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        # Keep message readable; details are available via .as_dict()
        return f"{self.code}: {self.message}"


def bouncer_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> BouncerError:
    return BouncerError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)

"""Human-verification adapter (Cloudflare Turnstile).

The browser widget produces a one-shot proof token; the gate redeems it via
the `siteverify` endpoint together with the secret key.

Failure modes are kept distinct:
    * the endpoint answers and says no  -> `verify()` returns False
    * network / HTTP / parse failure    -> `BouncerError` (retryable)
An empty token never reaches the network and is simply False.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .errors import BNC_E_VERIFICATION_UNAVAILABLE, bouncer_error

logger = logging.getLogger(__name__)

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class HumanVerifier(Protocol):
    async def verify(self, proof_token: str, remote_ip: Optional[str] = None) -> bool:
        ...


@dataclass
class TurnstileVerifier:
    """Redeem Turnstile tokens.

    `http` may be injected (tests use `httpx.MockTransport`); otherwise a
    short-lived client is opened per call.
    """

    secret_key: str
    url: str = SITEVERIFY_URL
    timeout_seconds: float = 10.0
    http: Optional[httpx.AsyncClient] = None

    async def _post(self, data: dict) -> httpx.Response:
        if self.http is not None:
            return await self.http.post(self.url, data=data)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(self.url, data=data)

    async def verify(self, proof_token: str, remote_ip: Optional[str] = None) -> bool:
        if not proof_token:
            return False

        data = {"secret": self.secret_key, "response": proof_token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            resp = await self._post(data)
            resp.raise_for_status()
            decoded = resp.json()
        except httpx.HTTPStatusError as e:
            raise bouncer_error(
                BNC_E_VERIFICATION_UNAVAILABLE,
                f"siteverify HTTP {e.response.status_code}",
                retryable=True,
                http_status=502,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise bouncer_error(
                BNC_E_VERIFICATION_UNAVAILABLE,
                f"siteverify failed: {type(e).__name__}: {e}",
                retryable=True,
                http_status=502,
            )

        if not isinstance(decoded, dict):
            raise bouncer_error(
                BNC_E_VERIFICATION_UNAVAILABLE,
                "siteverify returned a non-object body",
                retryable=True,
                http_status=502,
            )

        success = decoded.get("success") is True
        if not success:
            logger.debug("turnstile rejected token: %s", decoded.get("error-codes"))
        return success

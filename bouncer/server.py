"""
Bouncer HTTP surface.

FastAPI application exposing the Invite Gate:

    GET  /            room picker + Turnstile widget
    POST /invite      submit the form
    GET  /callback    identity-provider redirect target
    GET  /v1/rooms    eligible rooms as JSON
    GET  /v1/health   liveness
    GET  /v1/stats    in-memory counters
    GET  /metrics     Prometheus exposition

The gate can be injected (tests); otherwise it is built from the environment
during application startup, which also enumerates the eligible rooms.
"""

from __future__ import annotations

import html
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from .config import TURNSTILE_TEST_SITE_KEY, BouncerConfig
from .errors import BouncerError
from .gate import Completed, GateOutcome, InviteGate, Redirect
from .metrics import instrument_fastapi
from .ops_stats import OPS_STATS

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


# ---------------------------
# Response Models
# ---------------------------

class RoomModel(BaseModel):
    """One eligible room as listed by /v1/rooms."""
    room_id: str
    canonical_alias: Optional[str] = None
    display_name: Optional[str] = None
    join_rule: str


class HealthResponse(BaseModel):
    status: str
    version: str
    invite_policy: Optional[str] = None
    eligible_rooms: int = 0


def _outcome_response(outcome: GateOutcome) -> Response:
    if isinstance(outcome, Redirect):
        return RedirectResponse(outcome.url, status_code=303)
    if isinstance(outcome, Completed):
        return HTMLResponse(html.escape(outcome.message), status_code=200)
    return HTMLResponse(html.escape(outcome.reason), status_code=int(outcome.http_status))


def _token_ok(req: Request, token: str) -> bool:
    if not token:
        return True
    authz = (req.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
        return True
    return (req.headers.get("X-Stats-Token") or "").strip() == token


async def build_gate(config: BouncerConfig):
    """Connect to the homeserver, snapshot eligible rooms and assemble the gate.

    Returns `(gate, room_service)`; the caller closes the room service.
    """
    from .matrix import MautrixRoomService, build_client, ensure_identity
    from .rooms import RoomDirectory

    service = MautrixRoomService(
        build_client(config.homeserver, config.user_id, config.access_token, config.device_id)
    )
    try:
        await ensure_identity(service, config.user_id)
        directory = await RoomDirectory.build(service, config.user_id)
    except BaseException:
        await service.close()
        raise
    return InviteGate.from_config(config, service, directory), service


def create_app(gate: Optional[InviteGate] = None, config: Optional[BouncerConfig] = None) -> FastAPI:
    """Create FastAPI application with the invite gate endpoints."""
    from . import __version__ as bouncer_version

    if gate is None and config is None:
        config = BouncerConfig.from_env()

    site_key = config.turnstile_site_key if config is not None else TURNSTILE_TEST_SITE_KEY
    stats_token = config.stats_token if config is not None else ""
    metrics_enabled = config.metrics_enabled if config is not None else True

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.gate is not None:
            yield
            return
        built, service = await build_gate(config)
        app.state.gate = built
        logger.info("invite gate ready (policy=%s, %d room(s))", built.policy, len(built.directory))
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(
        title="Matrix Bouncer",
        description="Invite gate for Matrix rooms",
        version=bouncer_version,
        lifespan=lifespan,
    )
    app.state.gate = gate

    @app.exception_handler(BouncerError)
    async def _bouncer_error_handler(request: Request, exc: BouncerError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    if metrics_enabled:
        instrument_fastapi(app, authorize=lambda req: _token_ok(req, stats_token))

    def _gate(request: Request) -> InviteGate:
        return request.app.state.gate

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        g = _gate(request)
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "rooms": g.list_eligible_rooms(),
                "turnstile_site_key": site_key,
                "identity_linking": g.identity_provider is not None,
            },
        )

    @app.post("/invite")
    async def invite(
        request: Request,
        room_id: str = Form(""),
        user_id: str = Form(""),
        cf_turnstile_response: str = Form("", alias="cf-turnstile-response"),
        proof_token: str = Form(""),
    ):
        remote_ip = request.client.host if request.client else None
        outcome = await _gate(request).submit_invite(
            room_id,
            user_id,
            cf_turnstile_response or proof_token,
            remote_ip=remote_ip,
        )
        return _outcome_response(outcome)

    @app.get("/callback")
    async def callback(request: Request, code: str = "", state: str = ""):
        outcome = await _gate(request).complete_callback(code, state)
        return _outcome_response(outcome)

    @app.get("/v1/rooms", response_model=List[RoomModel])
    async def list_rooms(request: Request):
        return [r.to_dict() for r in _gate(request).list_eligible_rooms()]

    @app.get("/v1/stats")
    async def stats(request: Request):
        if not _token_ok(request, stats_token):
            return JSONResponse(
                status_code=401,
                content={"code": "STATS_UNAUTHORIZED", "message": "stats token required", "retryable": False},
            )
        g = _gate(request)
        extra: Dict[str, Any] = {"pending_invites": len(g.pending) if g is not None else 0}
        return OPS_STATS.snapshot(extra=extra)

    @app.get("/v1/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        g = _gate(request)
        return {
            "status": "healthy",
            "version": bouncer_version,
            "invite_policy": g.policy if g is not None else None,
            "eligible_rooms": len(g.directory) if g is not None else 0,
        }

    return app

from __future__ import annotations

from enum import Enum
from functools import wraps
from typing import Awaitable, Callable, TypeVar

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from auth.models import SessionSnapshot

T = TypeVar("T")


class GuardDecision(str, Enum):
    RENDER = "render"
    LOGIN = "login"
    BUSY = "busy"


def decide(snapshot: SessionSnapshot) -> GuardDecision:
    if snapshot.is_busy:
        return GuardDecision.BUSY
    if snapshot.is_authenticated:
        return GuardDecision.RENDER
    return GuardDecision.LOGIN


def select_view(
    snapshot: SessionSnapshot,
    *,
    authenticated: T,
    unauthenticated: T,
    loading: T,
) -> T:
    decision = decide(snapshot)
    if decision is GuardDecision.RENDER:
        return authenticated
    if decision is GuardDecision.BUSY:
        return loading
    return unauthenticated


def require_session(
    endpoint: Callable[[Request], Awaitable[Response]],
    *,
    login_path: str = "/login",
) -> Callable[[Request], Awaitable[Response]]:
    """Wrap a Starlette endpoint so it only runs for an authenticated session.

    The snapshot is read on every request; nothing is cached between calls.
    """

    @wraps(endpoint)
    async def guarded(request: Request) -> Response:
        snapshot = request.app.state.session.snapshot
        decision = decide(snapshot)
        if decision is GuardDecision.BUSY:
            return JSONResponse(
                {"error": "authenticating", "message": "Session check in progress."},
                status_code=503,
                headers={"Retry-After": "1"},
            )
        if decision is GuardDecision.LOGIN:
            return JSONResponse(
                {
                    "error": snapshot.error or "unauthenticated",
                    "message": "Connect your Spotify account first.",
                    "login_url": login_path,
                },
                status_code=401,
            )
        return await endpoint(request)

    return guarded

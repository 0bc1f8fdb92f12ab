from __future__ import annotations

import contextlib
import os
from urllib.parse import quote

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from auth.errors import AuthError, NetworkUnavailableError
from auth.gateway import AuthenticatedGateway
from auth.guards import require_session, select_view
from auth.session import SessionManager
from moodtunes.constants import APP_VERSION, SERVER_LOGGER
from moodtunes.env import AppConfig, load_config, load_env, setup_logging

LOGGER = SERVER_LOGGER


async def auth_error_handler(request: Request, error: AuthError) -> Response:
    LOGGER.warning("%s %s failed: %s", request.method, request.url.path, error.reason)
    return JSONResponse(error.to_payload(), status_code=error.status_code)


async def health_route(request: Request) -> Response:
    snapshot = request.app.state.session.snapshot
    return JSONResponse(
        {
            "status": "ok",
            "version": APP_VERSION,
            "session": snapshot.status.value,
        }
    )


async def home_route(request: Request) -> Response:
    snapshot = request.app.state.session.snapshot
    view = select_view(
        snapshot,
        authenticated="recommendations",
        unauthenticated="login",
        loading="loading",
    )
    payload = {"view": view, "session": snapshot.to_payload()}
    if request.query_params.get("error"):
        payload["callback_error"] = request.query_params["error"]
    return JSONResponse(payload)


async def session_route(request: Request) -> Response:
    return JSONResponse(request.app.state.session.snapshot.to_payload())


async def login_route(request: Request) -> Response:
    authorize_url = await request.app.state.session.login()
    return RedirectResponse(url=authorize_url, status_code=302)


async def callback_route(request: Request) -> Response:
    params = request.query_params
    try:
        await request.app.state.session.handle_callback(
            params.get("code"),
            params.get("state"),
            error=params.get("error"),
        )
    except AuthError as error:
        LOGGER.warning("Spotify callback failed: %s", error.reason)
        return RedirectResponse(url=f"/?error={quote(error.reason)}", status_code=302)
    return RedirectResponse(url="/", status_code=302)


async def callback_json_route(request: Request) -> Response:
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(
            {"error": "invalid_request", "message": "Body must be JSON."},
            status_code=400,
        )
    if not isinstance(body, dict):
        body = {}
    try:
        await request.app.state.session.handle_callback(
            body.get("code"),
            body.get("state"),
            error=body.get("error"),
        )
    except AuthError as error:
        LOGGER.warning("Spotify callback failed: %s", error.reason)
        return JSONResponse(
            {"success": False, "error": error.reason, "message": str(error)},
            status_code=error.status_code,
        )
    return JSONResponse({"success": True})


async def logout_route(request: Request) -> Response:
    snapshot = await request.app.state.session.logout()
    return JSONResponse(snapshot.to_payload())


@require_session
async def search_route(request: Request) -> Response:
    query = request.query_params.get("q", "").strip()
    if not query:
        return JSONResponse(
            {"error": "invalid_request", "message": "Missing q parameter."},
            status_code=400,
        )
    params = {
        "q": query,
        "type": request.query_params.get("type", "track"),
        "limit": request.query_params.get("limit", "20"),
    }
    payload = await request.app.state.gateway.get_json("search", params=params)
    return JSONResponse(payload)


def create_app(
    config: AppConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    session: SessionManager | None = None,
) -> Starlette:
    if config is None and session is None:
        load_env()
        setup_logging()
        config = load_config()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        manager = session or SessionManager.from_config(config, transport=transport)
        gateway_options = {"base_url": config.api_base_url} if config is not None else {}
        app.state.session = manager
        app.state.gateway = AuthenticatedGateway(manager, **gateway_options)
        try:
            await manager.start()
        except NetworkUnavailableError as error:
            LOGGER.warning("Could not confirm stored session at startup: %s", error)
        LOGGER.info("Session ready: %s", manager.snapshot.status.value)
        try:
            yield
        finally:
            await manager.aclose()

    routes = [
        Route("/", home_route, methods=["GET"]),
        Route("/health", health_route, methods=["GET"]),
        Route("/session", session_route, methods=["GET"]),
        Route("/login", login_route, methods=["GET"]),
        Route("/callback", callback_route, methods=["GET"]),
        Route("/callback", callback_json_route, methods=["POST"]),
        Route("/logout", logout_route, methods=["POST"]),
        Route("/api/search", search_route, methods=["GET"]),
    ]
    return Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={AuthError: auth_error_handler},
    )


def main() -> None:
    host = os.getenv("MOODTUNES_HOST", "127.0.0.1")
    port = int(os.getenv("MOODTUNES_PORT", "8000"))
    app = create_app()
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()

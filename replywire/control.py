"""HTTP control surface.

Thin aiohttp.web glue over the session manager:

    POST /start-whatsapp  {"userId": ...}  create or return a session
    POST /disconnect      {"userId": ...}  stop a session
    GET  /                                  health check

Creation errors map to HTTP statuses; everything else is reported
through the session store.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from aiohttp import web

from .dispatcher import ReplyDispatcher
from .exceptions import (
    AdapterTeardownError,
    AuthFailedError,
    HandshakeError,
    QrTimeoutError,
)
from .sessions.manager import SessionManager

logger = structlog.get_logger("replywire.control")

MANAGER_KEY = web.AppKey("manager", SessionManager)
DISPATCHER_KEY = web.AppKey("dispatcher", ReplyDispatcher)
CORS_ORIGIN_KEY = web.AppKey("cors_origin", str)

_CORS_METHODS = "GET, POST, OPTIONS"
_CORS_HEADERS = "Content-Type, Authorization"


@web.middleware
async def cors_middleware(request: web.Request, handler):
    """Answer preflight requests and tag responses with CORS headers."""
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        response = await handler(request)
    origin = request.app[CORS_ORIGIN_KEY]
    if origin == "*":
        # Wildcard never carries credentials
        response.headers["Access-Control-Allow-Origin"] = "*"
    else:
        if request.headers.get("Origin") == origin:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Methods"] = _CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = _CORS_HEADERS
    return response


async def _read_user_id(request: web.Request) -> Optional[str]:
    try:
        data = await request.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("userId")
    if not isinstance(user_id, str) or not user_id.strip():
        return None
    return user_id.strip()


async def start_session(request: web.Request) -> web.Response:
    user_id = await _read_user_id(request)
    if not user_id:
        return web.json_response({"error": "Missing userId"}, status=400)

    manager = request.app[MANAGER_KEY]
    try:
        session = await manager.create(user_id)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    except QrTimeoutError as e:
        return web.json_response({"error": e.message, "code": "qr_timeout"}, status=504)
    except AuthFailedError as e:
        return web.json_response({"error": e.message, "code": "auth_failed"}, status=401)
    except HandshakeError as e:
        logger.error("start_session_failed", tenant_id=user_id, error=str(e))
        return web.json_response({"error": e.message, "code": "handshake_failed"}, status=502)

    return web.json_response({
        "message": f"Client started for {user_id}",
        "session": session.to_dict(),
    })


async def stop_session(request: web.Request) -> web.Response:
    user_id = await _read_user_id(request)
    manager = request.app[MANAGER_KEY]
    if not user_id or manager.lookup(user_id) is None:
        return web.json_response({"error": "Invalid or inactive userId"}, status=400)

    try:
        await manager.destroy(user_id)
    except AdapterTeardownError as e:
        # Session is evicted regardless; report the leak to the caller
        return web.json_response({
            "message": f"Client {user_id} disconnected.",
            "warning": e.message,
        })
    return web.json_response({"message": f"Client {user_id} disconnected."})


async def healthcheck(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = {
        "status": "running",
        "activeClients": manager.session_count,
        "readyClients": manager.active_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    dispatcher = request.app.get(DISPATCHER_KEY)
    if dispatcher is not None:
        body["dispatcher"] = {
            "running": dispatcher.is_running,
            "queued": dispatcher.queued_count,
            **dispatcher.stats.__dict__,
        }
    return web.json_response(body)


def create_app(
    manager: SessionManager,
    dispatcher: Optional[ReplyDispatcher] = None,
    cors_origin: str = "*",
) -> web.Application:
    """Build the control application."""
    app = web.Application(middlewares=[cors_middleware])
    app[MANAGER_KEY] = manager
    if dispatcher is not None:
        app[DISPATCHER_KEY] = dispatcher
    app[CORS_ORIGIN_KEY] = cors_origin
    app.router.add_post("/start-whatsapp", start_session)
    app.router.add_post("/disconnect", stop_session)
    app.router.add_get("/", healthcheck)
    return app


class ControlServer:
    """Runs the control application on a TCP site."""

    def __init__(self, app: web.Application, host: str, port: int):
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("control_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("control_server_stopped")

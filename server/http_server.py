"""
termrelay - HTTP and WebSocket application

Exposes the control endpoint that opens SSH sessions and the WebSocket
endpoint that streams them.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from server.config import ServerConfig
from server.gateway import TerminalGateway
from server.session_registry import SessionRegistry
from server.ssh_bridge import SSHBridge
from shared.protocol import (
    AuthenticationFailedError,
    ConnectionFailedError,
    InvalidRequestError,
    TunnelError,
)
from shared.version import __version__

logger = logging.getLogger("termrelay.http")

# HTTP status for each setup-time error
ERROR_STATUS = {
    InvalidRequestError: 400,
    AuthenticationFailedError: 401,
    ConnectionFailedError: 500,
}


class AuthMiddleware:
    """Simple bearer token authentication middleware."""

    def __init__(self, app, api_key: Optional[str] = None):
        self.app = app
        self.api_key = api_key

    async def __call__(self, scope, receive, send):
        # WebSockets authenticate with their unguessable session ID
        if scope["type"] == "http" and self.api_key:
            path = scope.get("path", "")
            if path != "/health":
                headers = dict(scope.get("headers", []))
                auth = headers.get(b"authorization", b"").decode()
                if not auth.startswith("Bearer ") or auth[7:] != self.api_key:
                    response = JSONResponse({"error": "Unauthorized"}, status_code=401)
                    await response(scope, receive, send)
                    return
        await self.app(scope, receive, send)


def create_http_app(config: Optional[ServerConfig] = None) -> Starlette:
    """
    Create the Starlette application.

    The session registry lives exactly as long as the application: it is
    created here, handed to the handlers, and emptied when the app shuts down.
    It is also exposed as ``app.state.registry``.
    """
    config = config or ServerConfig()

    registry = SessionRegistry(
        idle_timeout=config.idle_timeout,
        renew_on_activity=config.renew_idle_on_activity,
    )
    bridge = SSHBridge(
        registry,
        connect_timeout=config.connect_timeout,
        outbound_queue_size=config.outbound_queue_size,
        stall_timeout=config.stall_timeout,
    )
    gateway = TerminalGateway(registry, bridge)

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint for monitoring."""
        return JSONResponse(
            {
                "status": "healthy",
                "service": "termrelay",
                "version": __version__,
                "sessions": registry.count,
            }
        )

    async def list_sessions(request: Request) -> JSONResponse:
        """List live sessions. IDs are shortened so the listing cannot be used to attach."""
        sessions = await registry.list_sessions()
        for session in sessions:
            session["session_id"] = session["session_id"][:8]
        return JSONResponse({"sessions": sessions, "count": len(sessions)})

    async def ssh_connect(request: Request) -> JSONResponse:
        """Open an SSH connection and register a session for it."""
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid request body"}, status_code=400)

        hostname = body.get("hostname")
        port = body.get("port")
        username = body.get("username")

        try:
            client, channel = await run_in_threadpool(
                bridge.connect, hostname, port, username, body.get("password")
            )
        except TunnelError as e:
            status = ERROR_STATUS.get(type(e), 500)
            return JSONResponse(e.to_dict(), status_code=status)

        session_id = await registry.create(
            client, channel, hostname=hostname, port=port or 22, username=username
        )
        return JSONResponse({"sessionId": session_id, "status": "connected"})

    @asynccontextmanager
    async def lifespan(app):
        logger.info(
            f"termrelay {__version__} ready (idle_timeout={config.idle_timeout}s, "
            f"renew_on_activity={config.renew_idle_on_activity})"
        )
        try:
            yield
        finally:
            logger.info(f"Shutting down, closing {registry.count} session(s)")
            await registry.close_all()

    routes = [
        Route("/health", endpoint=health_check, methods=["GET"]),
        Route("/sessions", endpoint=list_sessions, methods=["GET"]),
        Route("/ssh/connect", endpoint=ssh_connect, methods=["POST"]),
        WebSocketRoute("/ws/ssh/{session_id}", endpoint=gateway.handle),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]
    if config.api_key:
        logger.info("API key authentication enabled")
        middleware.append(Middleware(AuthMiddleware, api_key=config.api_key))
    else:
        logger.warning("No API key configured - control endpoint is unauthenticated")

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.bridge = bridge
    app.state.gateway = gateway
    return app


async def run_http_server(config: ServerConfig) -> None:
    """Run the relay with uvicorn."""
    import uvicorn

    app = create_http_app(config)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )
    server = uvicorn.Server(uvicorn_config)

    logger.info(f"Starting termrelay on {config.host}:{config.port}")
    await server.serve()

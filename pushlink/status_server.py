from __future__ import annotations

from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from pushlink.session import SessionManager


def build_status_app(session: "SessionManager") -> web.Application:
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        status = session.status()
        return web.json_response(status, status=200 if status["alive"] else 503)

    app.router.add_get("/health", health)
    return app


async def start_status_server(
    session: "SessionManager",
    *,
    host: str = "127.0.0.1",
    port: int = 8787,
) -> tuple[web.AppRunner, str, int]:
    """Start a tiny HTTP server reporting the session's liveness.

    Exposes: /health (200 when alive, 503 otherwise)
    """
    runner = web.AppRunner(build_status_app(session))
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    return runner, host, port

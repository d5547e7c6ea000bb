import pytest
from aiohttp import test_utils

from pushlink.session import SessionManager
from pushlink.status_server import build_status_app


@pytest.mark.asyncio
async def test_health_reflects_session_state(transport, clock, sleeps):
    session = SessionManager(transport, clock=clock, sleep=sleeps)
    client = test_utils.TestClient(test_utils.TestServer(build_status_app(session)))
    await client.start_server()
    try:
        resp = await client.get("/health")
        assert resp.status == 503
        assert (await resp.json())["state"] == "disconnected"

        await session.connect()
        resp = await client.get("/health")
        body = await resp.json()
        assert resp.status == 200
        assert body == {
            "alive": True,
            "state": "authenticated",
            "awaiting_ack": 0,
            "pending_resend": 0,
            "reconnecting": False,
        }
    finally:
        await client.close()

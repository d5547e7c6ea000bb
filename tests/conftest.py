from __future__ import annotations

import json

import pytest

from pushlink.errors import TransportError


class FakeTransport:
    """In-memory Transport recording every frame handed to it."""

    def __init__(self) -> None:
        self.sink = None
        self.sent: list[str] = []
        self.send_attempts = 0
        self.fail_sends = 0
        self.connected = False
        self.connect_calls = 0
        self.connect_failures = 0
        self.disconnect_calls = 0

    def set_event_sink(self, sink) -> None:
        self.sink = sink

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_failures:
            self.connect_failures -= 1
            raise TransportError("connection refused")
        self.connected = True

    def send(self, payload: str) -> None:
        self.send_attempts += 1
        if self.fail_sends:
            self.fail_sends -= 1
            raise TransportError("not connected")
        if not self.connected:
            raise TransportError("not connected")
        self.sent.append(payload)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def emit(self, event) -> None:
        await self.sink(event)

    def sent_frames(self) -> list[dict]:
        return [json.loads(p) for p in self.sent]

    def sent_ids(self) -> list[str]:
        return [f.get("message_id") for f in self.sent_frames()]


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()

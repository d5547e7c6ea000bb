import asyncio
import json
import logging

import pytest

from pushlink.codec import InboundFrame
from pushlink.dispatcher import (
    DEVICE_ERROR_CODES,
    SERVER_ERROR_CODES,
    Dispatcher,
    classify_nack,
)
from pushlink.errors import DeviceError, ServerError


class _Session:
    def __init__(self) -> None:
        self.acks: list[str] = []
        self.downstream: list[tuple[str, dict]] = []
        self.acknowledged: list[str] = []
        self.drains = 0
        self.tasks: list[asyncio.Task] = []

    async def send_downstream(self, message_id: str, payload: str) -> bool:
        self.downstream.append((message_id, json.loads(payload)))
        return True

    async def send_ack(self, payload: str) -> bool:
        self.acks.append(payload)
        return True

    def acknowledge(self, message_id: str) -> bool:
        self.acknowledged.append(message_id)
        return True

    def set_draining(self) -> None:
        self.drains += 1

    def spawn(self, coro, *, context=None) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.append(task)
        return task

    async def wait_idle(self) -> None:
        await asyncio.gather(*self.tasks)


def _frame(**attrs) -> InboundFrame:
    return InboundFrame(raw=json.dumps(attrs), attrs=attrs)


@pytest.mark.asyncio
async def test_ack_settles_message_id():
    session = _Session()
    await Dispatcher(session).dispatch(_frame(message_type="ack", message_id="m1"))
    assert session.acknowledged == ["m1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("code", sorted(DEVICE_ERROR_CODES | SERVER_ERROR_CODES))
async def test_nack_codes_are_logged_and_settled(code):
    session = _Session()
    seen = []

    async def on_nack(error):
        seen.append(error)

    await Dispatcher(session, on_nack=on_nack).dispatch(
        _frame(message_type="nack", message_id="m1", error=code, error_description="x")
    )

    assert session.acknowledged == ["m1"]
    assert session.drains == 0
    assert len(seen) == 1
    expected = DeviceError if code in DEVICE_ERROR_CODES else ServerError
    assert isinstance(seen[0], expected)
    assert seen[0].code == code
    assert seen[0].message_id == "m1"


@pytest.mark.asyncio
async def test_nack_connection_draining_sets_draining():
    session = _Session()
    await Dispatcher(session).dispatch(
        _frame(message_type="nack", message_id="m1", error="CONNECTION_DRAINING")
    )
    assert session.acknowledged == ["m1"]
    assert session.drains == 1


@pytest.mark.asyncio
async def test_nack_without_error_code_is_logged(caplog):
    session = _Session()
    with caplog.at_level(logging.ERROR, logger="dispatcher"):
        await Dispatcher(session).dispatch(_frame(message_type="nack", message_id="m1"))
    assert session.acknowledged == ["m1"]
    assert "without an error code" in caplog.text


def test_unknown_nack_code_is_unclassified():
    assert classify_nack("SOMETHING_NEW") is None
    assert classify_nack("CONNECTION_DRAINING") is None


@pytest.mark.asyncio
async def test_control_draining_and_unknown_control():
    session = _Session()
    dispatcher = Dispatcher(session)
    await dispatcher.dispatch(_frame(message_type="control", control_type="CONNECTION_DRAINING"))
    await dispatcher.dispatch(_frame(message_type="control", control_type="SOMETHING_ELSE"))
    await dispatcher.dispatch(_frame(message_type="control"))
    assert session.drains == 1


@pytest.mark.asyncio
async def test_receipt_and_unknown_types_do_nothing():
    session = _Session()
    dispatcher = Dispatcher(session)
    await dispatcher.dispatch(_frame(message_type="receipt", message_id="dr2:m1"))
    await dispatcher.dispatch(_frame(message_type="weird", message_id="m1"))
    assert session.acknowledged == []
    assert session.acks == []
    assert session.drains == 0


@pytest.mark.asyncio
async def test_echo_acks_then_replies_to_sender():
    session = _Session()
    await Dispatcher(session).dispatch(
        _frame(**{"from": "u1", "message_id": "up-1", "category": "com.example",
                  "data": {"action": "ECHO", "message": "hi"}})
    )
    await session.wait_idle()

    assert [json.loads(a) for a in session.acks] == [
        {"message_type": "ack", "to": "u1", "message_id": "up-1"}
    ]
    assert len(session.downstream) == 1
    message_id, payload = session.downstream[0]
    assert payload["to"] == "u1"
    assert payload["message_id"] == message_id
    assert payload["data"] == {"action": "ECHO", "message": "hi"}


@pytest.mark.asyncio
async def test_message_action_forwards_to_recipient():
    session = _Session()
    await Dispatcher(session).dispatch(
        _frame(**{"from": "u1", "message_id": "up-2",
                  "data": {"action": "MESSAGE", "recipient": "u2", "message": "yo"}})
    )
    await session.wait_idle()
    assert len(session.acks) == 1
    assert session.downstream[0][1]["to"] == "u2"


@pytest.mark.asyncio
async def test_message_action_uses_delivery_hook():
    session = _Session()
    delivered = []

    async def on_message(message):
        delivered.append(message)

    await Dispatcher(session, on_message=on_message).dispatch(
        _frame(**{"from": "u1", "message_id": "up-3",
                  "data": {"action": "MESSAGE", "recipient": "u2"}})
    )
    await session.wait_idle()
    assert [m.message_id for m in delivered] == ["up-3"]
    assert session.downstream == []


@pytest.mark.asyncio
async def test_upstream_without_action_is_discarded(caplog):
    session = _Session()
    with caplog.at_level(logging.WARNING, logger="dispatcher"):
        await Dispatcher(session).dispatch(
            _frame(**{"from": "u1", "message_id": "up-4", "data": {"message": "hi"}})
        )
    assert session.acks == []
    assert session.downstream == []
    assert "action" in caplog.text


@pytest.mark.asyncio
async def test_invalid_json_is_discarded(caplog):
    session = _Session()
    with caplog.at_level(logging.WARNING, logger="dispatcher"):
        await Dispatcher(session).dispatch_raw("{not json")
        await Dispatcher(session).dispatch_raw("[1, 2]")
    assert session.acknowledged == []
    assert caplog.text.count("Discarding frame") == 2


@pytest.mark.asyncio
async def test_upstream_sends_run_in_a_spawned_task():
    session = _Session()
    dispatcher = Dispatcher(session)

    await dispatcher.dispatch(
        _frame(**{"from": "u1", "message_id": "up-5", "data": {"action": "ECHO"}})
    )
    await dispatcher.dispatch(_frame(message_type="ack", message_id="m1"))

    # The ack is settled inline; the upstream reply is still queued.
    assert session.acknowledged == ["m1"]
    assert session.acks == []
    assert len(session.tasks) == 1

    await session.wait_idle()
    assert len(session.acks) == 1
    assert len(session.downstream) == 1


@pytest.mark.asyncio
async def test_message_without_recipient_is_acked_then_discarded(caplog):
    session = _Session()
    with caplog.at_level(logging.WARNING, logger="dispatcher"):
        await Dispatcher(session).dispatch(
            _frame(**{"from": "u1", "message_id": "up-6", "data": {"action": "MESSAGE"}})
        )
        await session.wait_idle()

    assert len(session.acks) == 1
    assert session.downstream == []
    assert "recipient" in caplog.text

"""Inbound frame classification.

The dispatcher holds no state of its own. It reads a frame's attribute map
and calls back into the session through `SessionPort`; the session never
looks inside frames itself.

Routing by ``message_type``:
- absent: upstream message from a device (ack it, then ECHO or MESSAGE);
  the sends run in a task spawned through the session
- ack / nack: settle the message id; nack codes are classified and logged
- receipt: ignored
- control: CONNECTION_DRAINING puts the session into draining

Only upstream handling sends anything, so only it leaves `dispatch` as a
spawned task. Every other frame settles registry or connection state before
`dispatch` returns, which keeps it ordered with the transport events that
follow it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Protocol

from pushlink import codec
from pushlink.codec import InboundFrame, UpstreamMessage
from pushlink.errors import DeviceError, NackError, ProtocolError, ServerError
from pushlink.utils import (
    BACKEND_ACTION_ECHO,
    BACKEND_ACTION_MESSAGE,
    CONNECTION_DRAINING,
    PAYLOAD_ATTRIBUTE_ACTION,
    PAYLOAD_ATTRIBUTE_RECIPIENT,
    unique_message_id,
)

log = logging.getLogger("dispatcher")

DEVICE_ERROR_CODES = frozenset(
    {
        "INVALID_JSON",
        "BAD_REGISTRATION",
        "DEVICE_UNREGISTERED",
        "BAD_ACK",
        "TOPICS_MESSAGE_RATE_EXCEEDED",
        "DEVICE_MESSAGE_RATE_EXCEEDED",
    }
)
SERVER_ERROR_CODES = frozenset({"SERVICE_UNAVAILABLE", "INTERNAL_SERVER_ERROR"})


class SessionPort(Protocol):
    async def send_downstream(self, message_id: str, payload: str) -> bool: ...

    async def send_ack(self, payload: str) -> bool: ...

    def acknowledge(self, message_id: str) -> bool: ...

    def set_draining(self) -> None: ...

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, context: str | None = None
    ) -> asyncio.Task: ...


UpstreamHook = Callable[[UpstreamMessage], Awaitable[None]]
NackHook = Callable[[NackError], Awaitable[None]]


def classify_nack(
    code: str, *, message_id: str | None = None, description: str | None = None
) -> NackError | None:
    """Map a nack error code to DeviceError/ServerError (None for drain/unknown)."""
    if code in DEVICE_ERROR_CODES:
        return DeviceError(code, message_id=message_id, description=description)
    if code in SERVER_ERROR_CODES:
        return ServerError(code, message_id=message_id, description=description)
    return None


class Dispatcher:
    def __init__(
        self,
        session: SessionPort,
        *,
        on_message: UpstreamHook | None = None,
        on_nack: NackHook | None = None,
    ):
        self._session = session
        self._on_message = on_message
        self._on_nack = on_nack

    async def dispatch_raw(self, raw: str) -> None:
        try:
            frame = codec.parse_frame(raw)
        except ProtocolError as exc:
            log.warning("Discarding frame: %s", exc)
            return
        await self.dispatch(frame)

    async def dispatch(self, frame: InboundFrame) -> None:
        """Route one frame. Malformed frames are logged and discarded."""
        try:
            await self._route(frame)
        except asyncio.CancelledError:
            raise
        except ProtocolError as exc:
            log.warning("Discarding frame: %s", exc)

    async def _route(self, frame: InboundFrame) -> None:
        message_type = frame.message_type
        if message_type is None:
            message = UpstreamMessage.from_attrs(frame.attrs)
            self._require_action(message)
            self._session.spawn(
                self._process_upstream(message), context=f"upstream {message.message_id}"
            )
            return

        if message_type == "ack":
            self.handle_ack(frame)
        elif message_type == "nack":
            await self.handle_nack(frame)
        elif message_type == "receipt":
            # Delivery receipts are not acted upon.
            log.debug("Receipt for %s", frame.message_id)
        elif message_type == "control":
            self.handle_control(frame)
        else:
            log.info("Received unknown FCM message type: %s", message_type)

    @staticmethod
    def _require_action(message: UpstreamMessage) -> str:
        action = message.data.get(PAYLOAD_ATTRIBUTE_ACTION)
        if not action:
            raise ProtocolError(
                "upstream message without 'action' (expected ECHO or MESSAGE)",
                payload_preview=str(message.to_dict())[:200],
            )
        return action

    async def _process_upstream(self, message: UpstreamMessage) -> None:
        try:
            await self.handle_upstream(message)
        except ProtocolError as exc:
            log.warning("Discarding frame: %s", exc)

    async def handle_upstream(self, message: UpstreamMessage) -> None:
        action = self._require_action(message)

        await self._session.send_ack(codec.create_ack(message.sender, message.message_id))

        if action == BACKEND_ACTION_ECHO:
            message_id = unique_message_id()
            await self._session.send_downstream(message_id, codec.reply_to(message, message_id))
        elif action == BACKEND_ACTION_MESSAGE:
            if self._on_message is not None:
                await self._on_message(message)
            else:
                await self.forward_to_recipient(message)
        else:
            log.info("Upstream message with unknown action %s from %s", action, message.sender)

    async def forward_to_recipient(self, message: UpstreamMessage) -> None:
        """Resend an upstream payload to the device named in data.recipient."""
        to = message.data.get(PAYLOAD_ATTRIBUTE_RECIPIENT)
        if not to:
            raise ProtocolError("MESSAGE action without 'recipient'")
        message_id = unique_message_id()
        await self._session.send_downstream(message_id, codec.reply_to(message, message_id, to=to))

    def handle_ack(self, frame: InboundFrame) -> None:
        message_id = frame.message_id
        if message_id:
            self._session.acknowledge(message_id)

    async def handle_nack(self, frame: InboundFrame) -> None:
        message_id = frame.message_id
        if message_id:
            self._session.acknowledge(message_id)

        code = frame.attrs.get("error")
        if not code:
            log.error("Received nack without an error code (message_id=%s)", message_id)
            return
        code = str(code)
        description = frame.attrs.get("error_description")

        if code == CONNECTION_DRAINING:
            log.info("Connection draining from nack ...")
            self._session.set_draining()
            return

        error = classify_nack(code, message_id=message_id, description=description)
        if error is None:
            log.info("Received unknown FCM error code: %s", code)
            return
        log.info("%s error: %s -> %s", error.kind, code, description)
        if self._on_nack is not None:
            await self._on_nack(error)

    def handle_control(self, frame: InboundFrame) -> None:
        control_type = frame.attrs.get("control_type")
        if control_type == CONNECTION_DRAINING:
            self._session.set_draining()
        else:
            log.info("Received unknown FCM control message: %s", control_type)

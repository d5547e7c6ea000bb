"""Session manager - reliable delivery over one FCM connection.

This layer is responsible for:
- Connection lifecycle (connect, drain, reconnect) via the Transport port
- In-flight bookkeeping (awaiting_ack / pending_resend) and replay
- Retry of individual sends under a bounded backoff
- Feeding inbound frames to the Dispatcher in arrival order

Each send that has to back off runs in its own task, so one slow retry never
holds up other sends or inbound processing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Coroutine, Iterable

from pushlink.backoff import RECONNECT_BACKOFF, SEND_BACKOFF, BackoffConfig, RetryPolicy
from pushlink.codec import DownstreamMessage
from pushlink.dispatcher import Dispatcher, NackHook, UpstreamHook
from pushlink.errors import ReconnectExhausted, RetryExhausted, TransportError
from pushlink.registry import (
    AWAITING_ACK,
    PENDING_RESEND,
    MessageRegistry,
    OutboundMessage,
    now_ms,
)
from pushlink.transport import (
    Authenticated,
    Closed,
    Connected,
    FrameReceived,
    ReconnectFailed,
    Transport,
    TransportEvent,
)
from pushlink.utils import unique_message_id

log = logging.getLogger("session")

DEFAULT_REPLAY_GRACE_MS = 5000.0


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DRAINING = "draining"


class SessionManager:
    """Owns the connection state and both registries for one FCM session."""

    def __init__(
        self,
        transport: Transport,
        *,
        send_backoff: BackoffConfig = SEND_BACKOFF,
        reconnect_backoff: BackoffConfig = RECONNECT_BACKOFF,
        replay_grace_ms: float = DEFAULT_REPLAY_GRACE_MS,
        on_message: UpstreamHook | None = None,
        on_nack: NackHook | None = None,
        on_fatal: Callable[[Exception], None] | None = None,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.send_backoff = send_backoff
        self.reconnect_backoff = reconnect_backoff
        self.replay_grace_ms = replay_grace_ms
        self.registry = MessageRegistry(clock=clock)
        self.dispatcher = Dispatcher(self, on_message=on_message, on_nack=on_nack)
        self.fatal_error: Exception | None = None

        self._state = ConnectionState.DISCONNECTED
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

        transport.set_event_sink(self.handle_event)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def draining(self) -> bool:
        return self._state is ConnectionState.DRAINING

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            log.debug("State %s -> %s", self._state.value, state.value)
            self._state = state

    def set_draining(self) -> None:
        if self._state is not ConnectionState.AUTHENTICATED:
            # Only a live link can drain.
            log.info("Ignoring drain signal while %s", self._state.value)
            return
        log.info("FCM connection is draining!")
        self._set_state(ConnectionState.DRAINING)

    def is_alive(self) -> bool:
        alive = self._state in (ConnectionState.AUTHENTICATED, ConnectionState.DRAINING)
        return alive and self.transport.is_connected()

    def status(self) -> dict[str, Any]:
        counts = self.registry.counts()
        return {
            "alive": self.is_alive(),
            "state": self._state.value,
            "awaiting_ack": counts[AWAITING_ACK],
            "pending_resend": counts[PENDING_RESEND],
            "reconnecting": bool(self._reconnect_task and not self._reconnect_task.done()),
        }

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and log in, then replay queued messages."""
        async with self._connect_lock:
            log.info("Initiating connection ...")
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.transport.connect()
            except TransportError:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            self._on_authenticated()

    def _on_authenticated(self) -> None:
        # Last step after a connection or reconnection.
        self._set_state(ConnectionState.AUTHENTICATED)
        self.replay()

    def replay(self) -> list[str]:
        """Resubmit pending_resend and stale awaiting_ack messages, oldest first.

        The messages stay in awaiting_ack while their resends are queued.
        """
        messages = self.registry.take_replay(grace_ms=self.replay_grace_ms)
        if messages:
            log.info("Sending %d queued message(s) through the new connection", len(messages))
        for message in messages:
            # Task creation order is the order of the first send attempt.
            self.spawn(self._resend(message), context=f"replay {message.message_id}")
        return [m.message_id for m in messages]

    async def _resend(self, message: OutboundMessage) -> bool:
        if self.registry.location(message.message_id) is None:
            log.debug("%s was settled before its resend", message.message_id)
            return False
        return await self.send_downstream(message.message_id, message.payload)

    async def reconnect(self) -> None:
        """Reconnect under the reconnect backoff.

        Only one attempt runs at a time; concurrent callers wait on the one
        already in flight. Raises ReconnectExhausted when every attempt fails.
        """
        task = self._reconnect_task
        if task is None or task.done():
            task = asyncio.create_task(self._reconnect_loop())
            self._reconnect_task = task
        else:
            log.debug("Reconnect already in progress; joining it")
        await asyncio.shield(task)

    async def _reconnect_loop(self) -> None:
        log.info("Initiating reconnection ...")
        policy = RetryPolicy(self.reconnect_backoff, sleep=self._sleep)
        while policy.should_retry():
            if self._closing:
                return
            try:
                await self.connect()
            except TransportError as exc:
                log.warning(
                    "Reconnect attempt %d/%d failed: %s",
                    policy.max_attempts - policy.attempts_left + 1,
                    policy.max_attempts,
                    exc,
                )
                try:
                    await policy.on_failure()
                except RetryExhausted as exhausted:
                    error = ReconnectExhausted(
                        f"Giving up reconnect after {exhausted.attempts} attempts"
                    )
                    self._report_fatal(error)
                    raise error from exhausted
            else:
                policy.on_success()

    def _report_fatal(self, error: Exception) -> None:
        log.critical("%s", error)
        self.fatal_error = error
        if self._on_fatal is not None:
            self._on_fatal(error)

    async def handle_event(self, event: TransportEvent) -> None:
        """Single entry point for transport events.

        Frames are classified before this returns, so a drain signal is
        always seen before a Closed event the transport emits after it.
        """
        if isinstance(event, FrameReceived):
            await self._guard(self.dispatcher.dispatch_raw(event.raw), context="dispatch")
        elif isinstance(event, Connected):
            log.debug("Transport connected; waiting for login")
        elif isinstance(event, Authenticated):
            if self._state is ConnectionState.CONNECTING:
                # connect() finishes the job once the transport returns.
                return
            log.info("Transport re-authenticated on its own")
            self._on_authenticated()
        elif isinstance(event, Closed):
            self._on_closed(event)
        elif isinstance(event, ReconnectFailed):
            log.warning("Transport reconnection failed: %s", event.error)
        else:
            log.warning("Unknown transport event: %r", event)

    def _on_closed(self, event: Closed) -> None:
        was = self._state
        log.info("Connection closed (%s). Draining: %s", event.reason, was is ConnectionState.DRAINING)
        if was is ConnectionState.CONNECTING:
            # The pending connect() reports this as a failure.
            return
        self._set_state(ConnectionState.DISCONNECTED)
        if self._closing:
            return
        if was is ConnectionState.DRAINING:
            self.spawn(self.reconnect(), context="reconnect")
        elif was is ConnectionState.AUTHENTICATED:
            log.warning("Connection dropped unexpectedly; not reconnecting from the session layer")

    async def disconnect_gracefully(self) -> None:
        self._closing = True
        await self.transport.disconnect()

    async def close(self) -> None:
        """Cancel in-flight sends and reconnects, then disconnect.

        Cancelled sends keep their registry entries.
        """
        self._closing = True
        tasks = list(self._tasks)
        if self._reconnect_task and not self._reconnect_task.done():
            tasks.append(self._reconnect_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.transport.is_connected():
            await self.transport.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_downstream(self, message_id: str, payload: str) -> bool:
        """Track a message and send it.

        Returns True once the transport took the frame. While draining the
        frame is held for the next replay; after exhausted retries it moves
        to pending_resend. Both return False.
        """
        if self._state is ConnectionState.DRAINING:
            self.registry.track(message_id, payload, sent=False)
            log.info("Connection draining; holding %s for the next connection", message_id)
            return False

        self.registry.track(message_id, payload)
        try:
            await self._send_with_retry(payload)
        except RetryExhausted as exc:
            if self.registry.defer(message_id) is not None:
                log.warning("%s; %s queued for resend", exc, message_id)
            return False
        return True

    async def send_ack(self, payload: str) -> bool:
        """Send a protocol ack. Acks are never tracked; exhausted ones are dropped."""
        try:
            await self._send_with_retry(payload)
        except RetryExhausted as exc:
            log.warning("%s; dropping ack", exc)
            return False
        return True

    async def _send_with_retry(self, payload: str) -> None:
        policy = RetryPolicy(self.send_backoff, sleep=self._sleep)
        while policy.should_retry():
            try:
                self.transport.send(payload)
            except TransportError as exc:
                log.info("The frame could not be sent (%s). Backing off", exc)
                await policy.on_failure()
            else:
                policy.on_success()

    async def send_broadcast(
        self, message: DownstreamMessage, recipients: Iterable[str]
    ) -> list[str]:
        """Send one copy of ``message`` per recipient, each with its own id."""
        base = message.to_dict()
        sends: list[Coroutine[Any, Any, bool]] = []
        ids: list[str] = []
        for to in recipients:
            message_id = unique_message_id()
            attrs = dict(base, message_id=message_id, to=to)
            sends.append(
                self.send_downstream(message_id, DownstreamMessage(**attrs).to_json())
            )
            ids.append(message_id)
        await asyncio.gather(*sends)
        return ids

    def acknowledge(self, message_id: str) -> bool:
        if self.registry.acknowledge(message_id) is None:
            log.debug("Ack/nack for unknown message %s", message_id)
            return False
        return True

    # -------------------------------------------------------------------------
    # Task helpers
    # -------------------------------------------------------------------------

    async def _guard(self, coro: Coroutine[Any, Any, Any], *, context: str | None = None):
        """Run a coroutine with a single error boundary."""
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except ReconnectExhausted:
            # Already reported through on_fatal.
            return None
        except Exception:
            if context:
                log.exception("Unhandled error (%s)", context)
            else:
                log.exception("Unhandled error")
            return None

    def spawn(self, coro: Coroutine[Any, Any, Any], *, context: str | None = None) -> asyncio.Task:
        """Run ``coro`` as an independent, tracked task."""
        task = asyncio.create_task(self._guard(coro, context=context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # A task cancelled before its first step never starts ``coro``.
        task.add_done_callback(lambda _task: coro.close())
        return task

    async def wait_idle(self) -> None:
        """Wait until every spawned task (sends, dispatches, reconnects) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

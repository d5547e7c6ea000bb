"""XMPP transport for the FCM connection server.

The session layer depends only on the `Transport` port and the typed events
below. `XmppTransport` is the slixmpp-backed implementation: it owns the TLS
stream, SASL PLAIN login and XEP-0199 keepalive, and forwards every
`<gcm xmlns="google:mobile:data">` payload it receives as a FrameReceived
event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from slixmpp.clientxmpp import ClientXMPP
from slixmpp.stanza import Message
from slixmpp.xmlstream import ElementBase, register_stanza_plugin
from slixmpp.xmlstream.handler import CoroutineCallback
from slixmpp.xmlstream.matcher import StanzaPath

from pushlink.errors import TransportError
from pushlink.utils import FCM_ELEMENT_NAME, FCM_NAMESPACE

log = logging.getLogger("transport")


# -----------------
# Event boundary
# -----------------


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class Closed:
    reason: str | None = None


@dataclass(frozen=True)
class ReconnectFailed:
    error: str


@dataclass(frozen=True)
class FrameReceived:
    raw: str


TransportEvent = Connected | Authenticated | Closed | ReconnectFailed | FrameReceived
EventSink = Callable[[TransportEvent], Awaitable[None]]


class Transport(Protocol):
    def set_event_sink(self, sink: EventSink) -> None: ...

    async def connect(self) -> None:
        """Open the stream and log in. Raises TransportError on failure."""
        ...

    def send(self, payload: str) -> None:
        """Queue one frame. Raises TransportError when not connected."""
        ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...


# -----------------
# slixmpp adapter
# -----------------


class GcmPayload(ElementBase):
    """`<gcm xmlns="google:mobile:data">{json}</gcm>` message extension."""

    name = FCM_ELEMENT_NAME
    namespace = FCM_NAMESPACE
    plugin_attrib = FCM_ELEMENT_NAME
    interfaces = {"json"}

    def get_json(self) -> str:
        return self.xml.text or ""

    def set_json(self, value: str) -> None:
        self.xml.text = value

    def del_json(self) -> None:
        self.xml.text = None


register_stanza_plugin(Message, GcmPayload)


class CcsXMPP(ClientXMPP):
    """Client stream for the FCM connection server.

    FCM wants direct TLS, SASL PLAIN, no presence and no roster.
    """

    def __init__(self, jid: str, password: str, *, keepalive_interval: int = 100):
        super().__init__(jid, password)
        self._connected_event = asyncio.Event()

        self.register_plugin(
            "xep_0199", pconfig={"keepalive": True, "interval": keepalive_interval}
        )  # Ping

        self.enable_direct_tls = True
        self.enable_starttls = False
        self.enable_plaintext = False

    def set_connected(self, connected: bool) -> None:
        if connected:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    def is_connected(self) -> bool:
        return self._connected_event.is_set()

    def send_gcm(self, payload: str) -> None:
        msg = self.Message()
        msg[FCM_ELEMENT_NAME]["json"] = payload
        msg.send()


class XmppTransport:
    def __init__(
        self,
        jid: str,
        password: str,
        *,
        host: str,
        port: int,
        keepalive_interval: int = 100,
    ):
        self.host = host
        self.port = port
        self._sink: EventSink | None = None
        self._auth_waiter: asyncio.Future[None] | None = None

        self.client = CcsXMPP(jid, password, keepalive_interval=keepalive_interval)
        self.client.register_handler(
            CoroutineCallback(
                "FCM Message",
                StanzaPath(f"message/{FCM_ELEMENT_NAME}"),
                self._on_gcm,
            )
        )
        self.client.add_event_handler("connected", self._on_connected)
        self.client.add_event_handler("session_start", self._on_session_start)
        self.client.add_event_handler("failed_all_auth", self._on_failed_auth)
        self.client.add_event_handler("connection_failed", self._on_connection_failed)
        self.client.add_event_handler("disconnected", self._on_disconnected)

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    async def connect(self) -> None:
        log.info("Connecting to %s:%d ...", self.host, self.port)
        waiter = asyncio.get_running_loop().create_future()
        self._auth_waiter = waiter
        try:
            self.client.connect(host=self.host, port=self.port)
            await waiter
        except OSError as exc:
            raise TransportError(f"connect to {self.host}:{self.port} failed: {exc}") from exc
        finally:
            self._auth_waiter = None

    def send(self, payload: str) -> None:
        if not self.client.is_connected():
            raise TransportError("not connected")
        try:
            self.client.send_gcm(payload)
        except OSError as exc:
            raise TransportError(f"send failed: {exc}") from exc
        log.debug("Sent: %s", payload)

    async def disconnect(self) -> None:
        log.info("Disconnecting from %s", self.host)
        self.client.set_connected(False)
        fut = self.client.disconnect()
        if fut is not None:
            await fut

    def is_connected(self) -> bool:
        return self.client.is_connected()

    # -------------------------------------------------------------------------
    # slixmpp handlers
    # -------------------------------------------------------------------------

    async def _emit(self, event: TransportEvent) -> None:
        if self._sink is None:
            log.debug("No event sink; dropping %s", type(event).__name__)
            return
        await self._sink(event)

    def _fail_waiter(self, exc: Exception) -> bool:
        waiter = self._auth_waiter
        if waiter is None or waiter.done():
            return False
        waiter.set_exception(exc)
        return True

    async def _on_connected(self, event) -> None:
        log.info("Connection established.")
        await self._emit(Connected())

    async def _on_session_start(self, event) -> None:
        log.info("User authenticated: %s", self.client.boundjid.bare)
        self.client.set_connected(True)
        waiter = self._auth_waiter
        if waiter is not None and not waiter.done():
            waiter.set_result(None)
        await self._emit(Authenticated())

    async def _on_failed_auth(self, event) -> None:
        log.error("Authentication failed")
        self._fail_waiter(TransportError("authentication failed"))
        self.client.disconnect()

    async def _on_connection_failed(self, error) -> None:
        if self._fail_waiter(TransportError(f"connection failed: {error}")):
            # The session's reconnect backoff owns retries from here.
            self.client.abort()
            return
        await self._emit(ReconnectFailed(error=str(error)))

    async def _on_disconnected(self, reason) -> None:
        self.client.set_connected(False)
        self._fail_waiter(TransportError(f"disconnected during login: {reason}"))
        await self._emit(Closed(reason=str(reason) if reason else None))

    async def _on_gcm(self, msg) -> None:
        raw = msg[FCM_ELEMENT_NAME]["json"]
        log.debug("Received: %s", raw)
        await self._emit(FrameReceived(raw=raw))

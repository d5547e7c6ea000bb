"""Reliable delivery session for the FCM XMPP connection server."""

from pushlink.backoff import BackoffConfig, RetryPolicy
from pushlink.codec import DownstreamMessage, InboundFrame, UpstreamMessage
from pushlink.config import RelayConfig, get_relay_config
from pushlink.dispatcher import Dispatcher
from pushlink.errors import (
    DeviceError,
    ProtocolError,
    ReconnectExhausted,
    RelayError,
    RetryExhausted,
    ServerError,
    TransportError,
)
from pushlink.registry import MessageRegistry, OutboundMessage
from pushlink.session import ConnectionState, SessionManager

__all__ = [
    "BackoffConfig",
    "ConnectionState",
    "DeviceError",
    "Dispatcher",
    "DownstreamMessage",
    "InboundFrame",
    "MessageRegistry",
    "OutboundMessage",
    "ProtocolError",
    "ReconnectExhausted",
    "RelayConfig",
    "RelayError",
    "RetryExhausted",
    "RetryPolicy",
    "ServerError",
    "SessionManager",
    "TransportError",
    "UpstreamMessage",
    "get_relay_config",
]

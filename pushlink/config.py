from __future__ import annotations

import os
from dataclasses import dataclass, field

from pushlink.backoff import RECONNECT_BACKOFF, SEND_BACKOFF, BackoffConfig
from pushlink.utils import (
    FCM_PORT,
    FCM_SERVER,
    FCM_SERVER_AUTH_CONNECTION,
    parse_bool,
)


@dataclass(frozen=True)
class StatusServerConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(frozen=True)
class RelayConfig:
    sender_id: str
    server_key: str
    host: str = FCM_SERVER
    port: int = FCM_PORT
    debug: bool = False
    send_backoff: BackoffConfig = SEND_BACKOFF
    reconnect_backoff: BackoffConfig = RECONNECT_BACKOFF
    replay_grace_ms: float = 5000.0
    keepalive_interval_s: int = 100
    status: StatusServerConfig = field(default_factory=StatusServerConfig)

    @property
    def jid(self) -> str:
        return f"{self.sender_id}@{FCM_SERVER_AUTH_CONNECTION}"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _backoff_from_env(prefix: str, default: BackoffConfig) -> BackoffConfig:
    return BackoffConfig(
        attempts=_env_int(f"{prefix}_ATTEMPTS", default.attempts),
        base_ms=_env_float(f"{prefix}_BASE_MS", default.base_ms),
        jitter_ms=_env_float(f"{prefix}_JITTER_MS", default.jitter_ms),
    )


def get_relay_config() -> RelayConfig:
    """Build the relay configuration from environment (call load_env() first)."""
    sender_id = (os.getenv("FCM_SENDER_ID") or "").strip()
    server_key = (os.getenv("FCM_SERVER_KEY") or "").strip()
    if not sender_id or not server_key:
        raise ValueError("FCM_SENDER_ID and FCM_SERVER_KEY must be set")

    host = (os.getenv("FCM_HOST") or FCM_SERVER).strip() or FCM_SERVER

    status = StatusServerConfig(
        enabled=parse_bool(os.getenv("PUSHLINK_STATUS_ENABLE"), default=True),
        host=(os.getenv("PUSHLINK_STATUS_HOST") or "127.0.0.1").strip() or "127.0.0.1",
        port=_env_int("PUSHLINK_STATUS_PORT", 8787),
    )

    return RelayConfig(
        sender_id=sender_id,
        server_key=server_key,
        host=host,
        port=_env_int("FCM_PORT", FCM_PORT),
        debug=parse_bool(os.getenv("PUSHLINK_DEBUG")),
        send_backoff=_backoff_from_env("PUSHLINK_SEND_RETRY", SEND_BACKOFF),
        reconnect_backoff=_backoff_from_env("PUSHLINK_RECONNECT_RETRY", RECONNECT_BACKOFF),
        replay_grace_ms=_env_float("PUSHLINK_REPLAY_GRACE_MS", 5000.0),
        keepalive_interval_s=_env_int("PUSHLINK_KEEPALIVE_INTERVAL", 100),
        status=status,
    )

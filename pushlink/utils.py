#!/usr/bin/env python3
"""
Shared constants and helpers for the relay components.
"""

import os
import uuid
from datetime import datetime
from pathlib import Path

# FCM connection server
FCM_SERVER = "fcm-xmpp.googleapis.com"
FCM_PORT = 5236
FCM_ELEMENT_NAME = "gcm"
FCM_NAMESPACE = "google:mobile:data"
FCM_SERVER_AUTH_CONNECTION = "gcm.googleapis.com"

# Backend action attribute values
BACKEND_ACTION_ECHO = "ECHO"
BACKEND_ACTION_MESSAGE = "MESSAGE"

# Common payload attributes (device app <-> relay)
PAYLOAD_ATTRIBUTE_MESSAGE = "message"
PAYLOAD_ATTRIBUTE_ACTION = "action"
PAYLOAD_ATTRIBUTE_RECIPIENT = "recipient"

CONNECTION_DRAINING = "CONNECTION_DRAINING"


def unique_message_id() -> str:
    """Return a message id like ``m-20240101120000-<uuid4>``."""
    stamp = datetime.now().strftime("%Y%m%d%H%M%S")
    return f"m-{stamp}-{uuid.uuid4()}"


# =============================================================================
# Environment Loading
# =============================================================================


def load_env(env_path: Path | None = None) -> None:
    """Load relay settings from a .env file into os.environ.

    The file defaults to ``$PUSHLINK_ENV_FILE``, else ``.env`` in the relay
    checkout. Variables already set in the process environment win over the
    file, so a deployment can override single FCM_* / PUSHLINK_* values.
    """
    if env_path is None:
        override = os.getenv("PUSHLINK_ENV_FILE")
        env_path = Path(override) if override else Path(__file__).parent.parent / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        os.environ.setdefault(key.strip(), val.strip().strip('"').strip("'"))


def parse_bool(value: str | bool | None, default: bool = False) -> bool:
    """Read an on/off env value (1/true/yes/on, any case)."""
    if isinstance(value, bool):
        return value
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}

"""JSON envelope mapping for FCM XMPP frames.

Frames travel as a JSON object inside the ``<gcm>`` element. The session layer
treats the JSON text as opaque; only the dispatcher looks at the parsed
attribute map.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pushlink.errors import ProtocolError


@dataclass(frozen=True)
class InboundFrame:
    raw: str
    attrs: dict[str, Any]

    @property
    def message_type(self) -> str | None:
        value = self.attrs.get("message_type")
        return None if value is None else str(value)

    @property
    def message_id(self) -> str | None:
        value = self.attrs.get("message_id")
        return None if value is None else str(value)


@dataclass(frozen=True)
class UpstreamMessage:
    """A message sent by a device app to the relay."""

    sender: str | None
    category: str | None
    message_id: str | None
    data: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_attrs(cls, attrs: dict[str, Any]) -> "UpstreamMessage":
        data = attrs.get("data")
        if data is not None and not isinstance(data, dict):
            raise ProtocolError("'data' must be an object", payload_preview=str(data)[:200])

        def _opt(key: str) -> str | None:
            value = attrs.get(key)
            return None if value is None else str(value)

        return cls(
            sender=_opt("from"),
            category=_opt("category"),
            message_id=_opt("message_id"),
            data={str(k): str(v) for k, v in (data or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.sender is not None:
            out["from"] = self.sender
        if self.category is not None:
            out["category"] = self.category
        if self.message_id is not None:
            out["message_id"] = self.message_id
        out["data"] = dict(self.data)
        return out


@dataclass
class DownstreamMessage:
    """A message sent by the relay to a device (or topic/condition)."""

    to: str | None
    message_id: str | None
    data: dict[str, str] | None = None
    notification: dict[str, Any] | None = None
    condition: str | None = None
    collapse_key: str | None = None
    priority: str | None = None
    content_available: bool | None = None
    time_to_live: int | None = None
    delivery_receipt_requested: bool | None = None
    dry_run: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in (
            "to",
            "message_id",
            "data",
            "notification",
            "condition",
            "collapse_key",
            "priority",
            "time_to_live",
        ):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        # Boolean flags are only sent when set.
        if self.content_available:
            out["content_available"] = True
        if self.delivery_receipt_requested:
            out["delivery_receipt_requested"] = True
        if self.dry_run:
            out["dry_run"] = True
        return out

    def to_json(self) -> str:
        return to_json(self.to_dict())


def to_json(attrs: dict[str, Any]) -> str:
    return json.dumps(attrs, ensure_ascii=False, separators=(",", ":"))


def parse_frame(raw: str) -> InboundFrame:
    """Parse a frame's JSON text into an attribute map."""
    try:
        attrs = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid JSON: {exc}", payload_preview=(raw or "")[:200]) from exc
    if not isinstance(attrs, dict):
        raise ProtocolError("frame is not a JSON object", payload_preview=raw[:200])
    return InboundFrame(raw=raw, attrs=attrs)


def create_ack(to: str | None, message_id: str | None) -> str:
    """JSON ack for a received upstream message."""
    return to_json({"message_type": "ack", "to": to, "message_id": message_id})


def reply_to(upstream: UpstreamMessage, message_id: str, to: str | None = None) -> str:
    """Downstream JSON carrying an upstream message's data payload."""
    return DownstreamMessage(
        to=to if to is not None else upstream.sender,
        message_id=message_id,
        data=dict(upstream.data),
    ).to_json()

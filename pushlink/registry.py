"""In-flight message bookkeeping.

Two keyed collections:
- awaiting_ack: sent, or queued to be sent; no ack/nack seen yet
- pending_resend: send exhausted its retries, resend on next connection

Until it is acked or nacked an id lives in exactly one of them. All mutations
go through a single lock so no reader observes a message mid-move.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable

AWAITING_ACK = "awaiting_ack"
PENDING_RESEND = "pending_resend"

_seq = itertools.count()


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class OutboundMessage:
    message_id: str
    payload: str
    enqueued_at: float = field(default_factory=now_ms)
    seq: int = field(default_factory=lambda: next(_seq))
    # False while held back during a drain; such a message was never put on
    # the wire, so no ack can be in flight for it.
    sent: bool = True

    @property
    def sort_key(self) -> tuple[float, int]:
        return (self.enqueued_at, self.seq)


class MessageRegistry:
    def __init__(self, *, clock: Callable[[], float] = now_ms):
        self._clock = clock
        self._lock = threading.Lock()
        self._awaiting: dict[str, OutboundMessage] = {}
        self._pending: dict[str, OutboundMessage] = {}

    def track(self, message_id: str, payload: str, *, sent: bool = True) -> OutboundMessage:
        """Record a message as awaiting acknowledgment."""
        message = OutboundMessage(
            message_id, payload, enqueued_at=self._clock(), sent=sent
        )
        with self._lock:
            self._pending.pop(message_id, None)
            self._awaiting[message_id] = message
        return message

    def acknowledge(self, message_id: str) -> OutboundMessage | None:
        """Drop a message once the server acked or nacked it.

        A send reported as failed may still have reached the server, so an ack
        also clears pending_resend.
        """
        return self.take(message_id)

    def defer(self, message_id: str) -> OutboundMessage | None:
        """Move a message whose send exhausted retries to pending_resend.

        Returns None when the id is no longer awaiting (an ack raced the
        failure, or a replay already took it).
        """
        with self._lock:
            message = self._awaiting.pop(message_id, None)
            if message is not None:
                self._pending[message_id] = message
            return message

    def take(self, message_id: str) -> OutboundMessage | None:
        with self._lock:
            message = self._pending.pop(message_id, None)
            if message is None:
                message = self._awaiting.pop(message_id, None)
            return message

    def take_replay(self, *, grace_ms: float) -> list[OutboundMessage]:
        """Return everything that should be resent, oldest first.

        All of pending_resend is taken. From awaiting_ack only messages older
        than ``grace_ms`` (or never sent) are taken, so a very recent send whose
        ack is still on the wire is left alone.

        Taken messages are moved back into awaiting_ack as not yet sent, under
        the same lock, so they stay tracked until the resend puts them on the
        wire and are picked up again by the next replay if it never does.
        """
        cutoff = self._clock() - grace_ms
        with self._lock:
            pending = list(self._pending.values())
            stale = [
                m
                for m in self._awaiting.values()
                if not m.sent or m.enqueued_at < cutoff
            ]
            replay = sorted(pending + stale, key=lambda m: m.sort_key)
            self._pending.clear()
            for m in replay:
                self._awaiting[m.message_id] = replace(m, sent=False)
        return replay

    def location(self, message_id: str) -> str | None:
        with self._lock:
            if message_id in self._awaiting:
                return AWAITING_ACK
            if message_id in self._pending:
                return PENDING_RESEND
            return None

    def awaiting_ids(self) -> list[str]:
        with self._lock:
            return list(self._awaiting)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {AWAITING_ACK: len(self._awaiting), PENDING_RESEND: len(self._pending)}

#!/usr/bin/env python3
"""
pushlink - reliable FCM XMPP relay

Keeps one authenticated connection to the FCM connection server, answers
device upstream messages (ECHO / MESSAGE actions) and guarantees
at-least-once delivery of downstream messages across link failures and
connection draining.

Configuration comes from the environment (or a .env file next to this
script):
- FCM_SENDER_ID / FCM_SERVER_KEY - credentials (required)
- FCM_HOST / FCM_PORT - connection server endpoint
- PUSHLINK_SEND_RETRY_* / PUSHLINK_RECONNECT_RETRY_* - backoff policies
- PUSHLINK_STATUS_* - health endpoint
- PUSHLINK_TEST_TO - optional registration token to greet on startup
- PUSHLINK_ENV_FILE - alternative .env path; the process environment wins
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from pushlink.codec import DownstreamMessage
from pushlink.config import get_relay_config
from pushlink.errors import TransportError
from pushlink.session import SessionManager
from pushlink.status_server import start_status_server
from pushlink.transport import XmppTransport
from pushlink.utils import PAYLOAD_ATTRIBUTE_MESSAGE, load_env, unique_message_id

log = logging.getLogger("relay")


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    slixmpp_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger("slixmpp").setLevel(slixmpp_level)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pushlink FCM relay")
    parser.add_argument("--to", default=os.getenv("PUSHLINK_TEST_TO", ""),
                        help="Registration token to send a sample message to")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


async def main(argv: list[str]) -> int:
    args = _parse_args(argv)
    load_env()
    cfg = get_relay_config()
    _configure_logging(args.debug or cfg.debug)

    loop = asyncio.get_running_loop()
    fatal: asyncio.Future[Exception] = loop.create_future()

    def _on_fatal(error: Exception) -> None:
        if not fatal.done():
            fatal.set_result(error)

    transport = XmppTransport(
        cfg.jid,
        cfg.server_key,
        host=cfg.host,
        port=cfg.port,
        keepalive_interval=cfg.keepalive_interval_s,
    )
    session = SessionManager(
        transport,
        send_backoff=cfg.send_backoff,
        reconnect_backoff=cfg.reconnect_backoff,
        replay_grace_ms=cfg.replay_grace_ms,
        on_fatal=_on_fatal,
    )

    status_runner = None
    if cfg.status.enabled:
        try:
            status_runner, host, port = await start_status_server(
                session, host=cfg.status.host, port=cfg.status.port
            )
            log.info("Status server listening on http://%s:%d/health", host, port)
        except OSError:
            log.exception("Failed to start status server")

    try:
        try:
            await session.connect()
        except TransportError:
            log.exception("Error trying to connect")
            return 1

        if args.to:
            message_id = unique_message_id()
            sample = DownstreamMessage(
                to=args.to,
                message_id=message_id,
                data={PAYLOAD_ATTRIBUTE_MESSAGE: "This is the simple sample message"},
            )
            await session.send_downstream(message_id, sample.to_json())

        error = await fatal
        log.error("Relay stopped: %s", error)
        return 2
    finally:
        await session.close()
        if status_runner is not None:
            await status_runner.cleanup()


def cli() -> int:
    try:
        return asyncio.run(main(sys.argv[1:]))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        return 0


if __name__ == "__main__":
    raise SystemExit(cli())

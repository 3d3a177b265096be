"""
Command line entry point.

Useful for checking a deployment from a terminal::

    python -m authlink login 12345678
    python -m authlink get /api/usuarios/me/
    python -m authlink listen --path /ws/chatbot/
    python -m authlink logout

Tokens are kept in ``AUTHLINK_TOKEN_FILE`` (default
``~/.authlink/tokens.json``) so consecutive invocations share a session.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from dataclasses import replace
from typing import List, Optional

import aiohttp

from .client import ApiClient
from .config import Settings
from .errors import AuthError, TransportError
from .metrics import start_metrics_server

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_FILE = os.path.join("~", ".authlink", "tokens.json")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="authlink", description="Authenticated backend client.")
    parser.add_argument("--backend-url", help="Override AUTHLINK_BACKEND_URL.")
    parser.add_argument("--token-file", help="Override AUTHLINK_TOKEN_FILE.")
    parser.add_argument(
        "--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in and store the token pair.")
    login.add_argument("dni")
    login.add_argument("--password", help="Prompted for when omitted.")

    sub.add_parser("logout", help="Log out and clear stored tokens.")

    get = sub.add_parser("get", help="GET a path and print the JSON body.")
    get.add_argument("path")

    listen = sub.add_parser("listen", help="Print realtime messages until interrupted.")
    listen.add_argument("--path", help="Channel path (default AUTHLINK_WS_PATH).")
    listen.add_argument(
        "--kind", action="append", help="Message type to print; repeatable (default: message)."
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    token_file = args.token_file or settings.token_file or os.path.expanduser(DEFAULT_TOKEN_FILE)
    settings = replace(settings, token_file=token_file)
    if args.backend_url:
        settings = replace(settings, backend_url=args.backend_url.rstrip("/"))
    return settings


async def _listen(client: ApiClient, path: Optional[str], kinds: List[str]) -> None:
    channel = client.channel(path) if path else client.chatbot
    channel.on_connect(lambda: logger.info("Connected"))
    channel.on_disconnect(lambda: logger.info("Disconnected"))
    for kind in kinds:
        channel.on_message(kind, lambda payload: print(json.dumps(payload)))
    await channel.connect()
    stop = asyncio.Event()
    await stop.wait()


async def run(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    if args.metrics_port or settings.metrics_enabled:
        start_metrics_server(args.metrics_port or int(os.environ.get("PROMETHEUS_PORT", "9108")))
    async with ApiClient(settings) as client:
        try:
            if args.command == "login":
                password = args.password or getpass.getpass("Password: ")
                await client.auth.login(args.dni, password)
                print("Logged in.")
            elif args.command == "logout":
                await client.auth.logout()
                print("Logged out.")
            elif args.command == "get":
                print(json.dumps(await client.gateway.fetch(args.path), indent=2))
            elif args.command == "listen":
                await _listen(client, args.path, args.kind or ["message"])
        except AuthError as exc:
            logger.error("Not authenticated: %s", exc)
            return 2
        except (TransportError, aiohttp.ClientError) as exc:
            logger.error("Request failed: %s", exc)
            return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

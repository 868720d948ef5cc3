"""Command-line interface for rc-relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import aiohttp

from . import constants, protocol
from .config import load_config, save_config
from .device import DeviceAgent
from .logging import configure_logging
from .operator_client import OperatorClient
from .protocol import Direction, PingCommand, RcCommand, StopCommand
from .relay import RelayServer

LOGGER = logging.getLogger(__name__)

_MOVE_DIRECTIONS = {
    "forward": Direction.FORWARD,
    "backward": Direction.BACKWARD,
    "left": Direction.LEFT,
    "right": Direction.RIGHT,
}
SEND_CHOICES = sorted(_MOVE_DIRECTIONS) + ["ping", "stop"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="Remote control relay for a motor-driven vehicle"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("relay", help="Run the WebSocket relay server")
    subparsers.add_parser("device", help="Run the vehicle agent with a simulated motor")

    send_parser = subparsers.add_parser("send", help="Send one command as an operator")
    send_parser.add_argument("action", choices=SEND_CHOICES)
    send_parser.add_argument(
        "--speed", type=int, default=50, help="Speed percentage for movement (0-100)"
    )
    send_parser.add_argument(
        "--url", default=None, help="Relay URL (default: device.server_url)"
    )
    send_parser.add_argument(
        "--wait",
        type=float,
        default=1.0,
        help="Seconds to keep printing replies after sending",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    init_parser = subparsers.add_parser(
        "init-config", help="Write a configuration file with the current settings"
    )
    init_parser.add_argument(
        "--server-url", default=None, help="Relay URL the device agent connects to"
    )
    init_parser.add_argument(
        "--port", type=int, default=None, help="Port the relay listens on"
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing file"
    )

    return parser


def build_command(action: str, speed: int) -> RcCommand:
    if action == "stop":
        return StopCommand()
    if action == "ping":
        return PingCommand()
    if not 0 <= speed <= protocol.SPEED_MAX:
        raise ValueError(f"speed must be between 0 and {protocol.SPEED_MAX}")
    return protocol.move(_MOVE_DIRECTIONS[action], speed)


async def send_command(url: str, command: RcCommand, wait: float) -> list[str]:
    """Send ``command`` and collect the text frames received within ``wait`` seconds."""

    replies: list[str] = []
    async with OperatorClient(url) as client:
        await client.send(command)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, wait)
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                replies.append(await client.receive_text(timeout=remaining))
            except asyncio.TimeoutError:
                break
    return replies


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "relay":
        try:
            RelayServer.serve(config)
        except OSError as exc:
            LOGGER.error(
                "Failed to listen on %s:%s: %s", config.relay.host, config.relay.port, exc
            )
            return 1
        return 0

    if args.command == "device":
        DeviceAgent.serve(config)
        return 0

    if args.command == "send":
        configure_logging(config.logging.level)
        try:
            command = build_command(args.action, args.speed)
        except ValueError as exc:
            LOGGER.error("Invalid command: %s", exc)
            return 1
        url = args.url or config.device.server_url
        try:
            replies = asyncio.run(send_command(url, command, args.wait))
        except (aiohttp.ClientError, ConnectionError, OSError) as exc:
            LOGGER.error("Could not reach relay at %s: %s", url, exc)
            return 1
        for reply in replies:
            print(reply)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "wifi_password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "init-config":
        if config.path.exists() and not args.force:
            print(
                f"{config.path} already exists; use --force to overwrite",
                file=sys.stderr,
            )
            return 1
        if args.server_url:
            config.raw.set("device", "server_url", args.server_url)
        if args.port is not None:
            config.raw.set("relay", "port", str(args.port))
        save_config(config)
        print(f"Configuration written to {config.path!s}")
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())

"""WebSocket relay fanning operator commands out to every connected peer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional, assert_never

import aiohttp
from aiohttp import WSCloseCode, WSMsgType, web

from . import protocol
from .broadcast import Broadcaster, SubscriberLagged, Subscription
from .config import RcRelayConfig, RelayConfig
from .health import HealthReporter
from .logging import configure_logging
from .protocol import (
    DecodeError,
    Direction,
    ErrorResponse,
    MoveCommand,
    PingCommand,
    PongResponse,
    RcCommand,
    RcResponse,
    StopCommand,
)

LOGGER = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (ConnectionError, aiohttp.ClientError)


def direct_reply(command: RcCommand) -> RcResponse:
    """Reply the relay sends straight back to the peer that issued ``command``."""

    if isinstance(command, PingCommand):
        return PongResponse()
    if isinstance(command, MoveCommand):
        direction = command.motor.direction
        speed = 0 if direction is Direction.STOP else command.motor.speed
        return protocol.status_for(direction, speed)
    if isinstance(command, StopCommand):
        return protocol.status_for(Direction.STOP, 0)
    assert_never(command)


class RelayServer:
    """Accepts operator and device connections and relays traffic between them.

    Every connection subscribes to a shared :class:`Broadcaster` when it is
    accepted. Valid commands are re-sent verbatim to all other peers and the
    sender receives a synthesized ``Status``/``Pong`` reply. Valid responses
    (the vehicle's status reports) are re-sent verbatim with no reply.
    Anything else earns the sender an ``Error`` and is not relayed.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._config = config
        self._health = health or HealthReporter("relay")
        self._broadcaster = Broadcaster(config.subscriber_queue_size)
        self._connections: set[web.WebSocketResponse] = set()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def health(self) -> HealthReporter:
        return self._health

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_websocket)
        app.router.add_get("/ws", self._handle_websocket)
        app.router.add_get("/healthz", self._health.handle_health)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            OSError: If the configured address cannot be bound.
        """

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise

        await self._report_connections()
        LOGGER.info(
            "WebSocket relay listening on ws://%s:%s", self._config.host, self._config.port
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
        self._runner = None
        self._site = None
        LOGGER.info("WebSocket relay stopped")

    async def run(self) -> None:
        """Serve until cancelled."""

        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    @classmethod
    def serve(cls, config: RcRelayConfig) -> None:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config.relay)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("rc-relay received shutdown signal")

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        heartbeat = self._config.heartbeat_seconds or None
        ws = web.WebSocketResponse(heartbeat=heartbeat)
        await ws.prepare(request)

        peer = request.remote or "unknown"
        transport = request.transport
        subscription = self._broadcaster.subscribe(
            name=peer,
            on_lag=transport.abort if transport is not None else None,
        )
        self._connections.add(ws)
        await self._report_connections()
        LOGGER.info("New WebSocket connection from: %s", peer)

        try:
            await self._serve_connection(ws, subscription, peer)
        except asyncio.CancelledError:
            raise
        except _TRANSPORT_ERRORS as exc:
            LOGGER.warning("Transport error on connection %s: %s", peer, exc)
        finally:
            subscription.close()
            try:
                if not ws.closed:
                    with contextlib.suppress(*_TRANSPORT_ERRORS):
                        await ws.close()
            finally:
                self._connections.discard(ws)
            await self._report_connections()
            LOGGER.info("Connection closed for: %s", peer)

        return ws

    async def _serve_connection(
        self, ws: web.WebSocketResponse, subscription: Subscription, peer: str
    ) -> None:
        receive_task: Optional[asyncio.Task[aiohttp.WSMessage]] = None
        forward_task: Optional[asyncio.Task[str]] = None
        try:
            while True:
                if receive_task is None:
                    receive_task = asyncio.create_task(ws.receive())
                if forward_task is None:
                    forward_task = asyncio.create_task(subscription.get())

                done, _ = await asyncio.wait(
                    {receive_task, forward_task}, return_when=asyncio.FIRST_COMPLETED
                )

                if receive_task in done:
                    message = receive_task.result()
                    receive_task = None
                    if not await self._handle_frame(ws, subscription, message, peer):
                        return

                if forward_task in done:
                    task, forward_task = forward_task, None
                    try:
                        text = task.result()
                    except SubscriberLagged:
                        LOGGER.warning("Dropping lagging connection %s", peer)
                        return
                    await ws.send_str(text)
        finally:
            for task in (receive_task, forward_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError, *_TRANSPORT_ERRORS):
                        await task

    async def _handle_frame(
        self,
        ws: web.WebSocketResponse,
        subscription: Subscription,
        message: aiohttp.WSMessage,
        peer: str,
    ) -> bool:
        """Process one inbound frame; returns False when the connection is done."""

        if message.type == WSMsgType.TEXT:
            await self._handle_text(ws, subscription, message.data, peer)
            return True

        if message.type == WSMsgType.BINARY:
            await ws.send_str(
                protocol.encode(
                    ErrorResponse("Invalid command: binary frames are not supported")
                )
            )
            return True

        if message.type == WSMsgType.ERROR:
            LOGGER.error("Error receiving message from %s: %s", peer, ws.exception())
            return False

        # CLOSE, CLOSING and CLOSED all end the connection.
        return False

    async def _handle_text(
        self,
        ws: web.WebSocketResponse,
        subscription: Subscription,
        text: str,
        peer: str,
    ) -> None:
        try:
            decoded = protocol.decode(text)
        except DecodeError as exc:
            LOGGER.error("Error parsing command from %s: %s", peer, exc)
            await ws.send_str(protocol.encode(ErrorResponse(f"Invalid command: {exc}")))
            return

        delivered = self._broadcaster.publish(text, sender=subscription)

        if isinstance(decoded, (MoveCommand, StopCommand, PingCommand)):
            LOGGER.info(
                "Received command from %s: %s (relayed to %d peers)",
                peer,
                decoded,
                delivered,
            )
            await ws.send_str(protocol.encode(direct_reply(decoded)))
        else:
            LOGGER.debug(
                "Relayed response from %s to %d peers: %s", peer, delivered, decoded
            )

    async def _report_connections(self) -> None:
        count = len(self._connections)
        await self._health.update("relay", True, f"connections={count}")
        await self._health.set_counter("connections", count)
        await self._health.set_counter(
            "dropped_subscribers", self._broadcaster.dropped_count
        )

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._connections):
            with contextlib.suppress(*_TRANSPORT_ERRORS):
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

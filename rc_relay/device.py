"""Vehicle-side agent executing relayed commands against the motor.

The agent keeps one outbound WebSocket connection to the relay. Frames are
handled strictly in arrival order and every command frame is answered with
exactly one response on the same connection. When the connection drops the
agent waits a backoff delay and connects again, forever, until :meth:`stop`
is called.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, assert_never

import aiohttp

from . import protocol
from .config import DeviceConfig, RcRelayConfig, ResilienceConfig
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .motor import Motor, SimulatedMotor
from .protocol import (
    DecodeError,
    Direction,
    ErrorResponse,
    MoveCommand,
    PingCommand,
    PongResponse,
    RcCommand,
    RcResponse,
    StatusResponse,
    StopCommand,
)

LOGGER = logging.getLogger(__name__)

_CONNECT_ERRORS = (aiohttp.ClientError, ConnectionError, OSError, asyncio.TimeoutError)


class ConnectionState(str, Enum):
    """Current state of the link to the relay."""

    DISCONNECTED = "disconnected"
    """No connection; waiting out the reconnect delay."""

    CONNECTING = "connecting"
    """Opening the WebSocket to the relay."""

    CONNECTED = "connected"
    """Handshake done; reading commands."""


@dataclass(slots=True)
class DeviceState:
    direction: Direction = Direction.STOP
    speed: int = 0


class CommandHandler:
    """Decodes inbound frames, drives the motor and builds the reply."""

    def __init__(self, motor: Motor) -> None:
        self._motor = motor
        self.state = DeviceState()

    def handle_text(self, text: str) -> Optional[RcResponse]:
        """Handle one text frame.

        Returns the response to send, or ``None`` for frames that are
        responses themselves (other peers' traffic echoed by the relay).
        """

        try:
            message = protocol.decode(text)
        except DecodeError as exc:
            LOGGER.error("Failed to parse command: %s", exc)
            return ErrorResponse(f"Invalid command: {exc}")

        if isinstance(message, (StatusResponse, PongResponse, ErrorResponse)):
            LOGGER.debug("Ignoring relayed response: %s", message)
            return None

        return self.handle(message)

    def handle(self, command: RcCommand) -> RcResponse:
        if isinstance(command, MoveCommand):
            self._apply(command.motor.direction, command.motor.speed)
            return self.status()
        if isinstance(command, StopCommand):
            self._apply(Direction.STOP, 0)
            return self.status()
        if isinstance(command, PingCommand):
            return PongResponse()
        assert_never(command)

    def fail_safe_stop(self) -> None:
        """Bring the vehicle to a halt without a command from an operator."""

        if self.state.direction is Direction.STOP and self.state.speed == 0:
            return
        LOGGER.warning("Stopping motors after losing the relay connection")
        self._apply(Direction.STOP, 0)

    def status(self) -> StatusResponse:
        direction, speed = self._motor.get_status()
        return protocol.status_for(direction, speed)

    def _apply(self, direction: Direction, speed: int) -> None:
        # State only records what the motor accepted.
        self._motor.set_direction(direction, speed)
        self.state.direction, self.state.speed = self._motor.get_status()


class DeviceAgent:
    """Maintains the relay connection and feeds frames to a :class:`CommandHandler`."""

    def __init__(
        self,
        config: DeviceConfig,
        motor: Motor,
        *,
        resilience: Optional[ResilienceConfig] = None,
        health: Optional[HealthReporter] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._resilience = resilience or ResilienceConfig()
        self._health = health or HealthReporter("device")
        self._handler = CommandHandler(motor)
        self._session = session
        self._owns_session = session is None

        self._state = ConnectionState.DISCONNECTED
        self._stop_event = asyncio.Event()
        self._active_ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connect_count = 0
        self._consecutive_failures = 0
        self._degraded = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device_state(self) -> DeviceState:
        return self._handler.state

    @property
    def handler(self) -> CommandHandler:
        return self._handler

    @property
    def connect_count(self) -> int:
        """Number of successful handshakes since the agent started."""
        return self._connect_count

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Connect, process commands and reconnect until :meth:`stop` is called."""

        self._stop_event.clear()
        health_server = await self._start_health_server()
        try:
            await self._connection_loop()
        finally:
            await self._set_state(ConnectionState.DISCONNECTED)
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None
            if health_server is not None:
                await health_server.stop()

    async def stop(self) -> None:
        """Interrupt the reconnect loop and close the active connection."""

        self._stop_event.set()
        ws = self._active_ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(*_CONNECT_ERRORS):
                await ws.close()

    @classmethod
    def serve(cls, config: RcRelayConfig, motor: Optional[Motor] = None) -> None:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(
            config.device, motor or SimulatedMotor(), resilience=config.resilience
        )
        LOGGER.info("RC device agent starting, relay at %s", config.device.server_url)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("RC device agent received shutdown signal")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _connection_loop(self) -> None:
        delay = self._resilience.reconnect_initial_seconds

        while not self._stop_event.is_set():
            await self._set_state(ConnectionState.CONNECTING)
            session = self._ensure_session()
            try:
                async with session.ws_connect(self._config.server_url) as ws:
                    self._active_ws = ws
                    self._connect_count += 1
                    self._consecutive_failures = 0
                    self._degraded = False
                    delay = self._resilience.reconnect_initial_seconds
                    await self._set_state(ConnectionState.CONNECTED)
                    await self._health.set_counter("connects", self._connect_count)
                    LOGGER.info("WebSocket connected to %s", self._config.server_url)

                    await self._read_loop(ws)
                LOGGER.info("WebSocket connection closed, reconnecting...")
            except asyncio.CancelledError:
                raise
            except _CONNECT_ERRORS as exc:
                self._consecutive_failures += 1
                LOGGER.error("WebSocket error: %s, reconnecting...", exc)
            except Exception:
                self._consecutive_failures += 1
                LOGGER.exception("Relay connection failed, reconnecting...")
            finally:
                self._active_ws = None

            if self._stop_event.is_set():
                break

            await self._set_state(ConnectionState.DISCONNECTED)
            if self._config.stop_on_disconnect:
                try:
                    self._handler.fail_safe_stop()
                except Exception:
                    LOGGER.exception("Fail-safe stop failed")
                await self._report_motor()
            await self._check_degraded()

            sleep_for = self._jittered(delay)
            LOGGER.debug("Reconnecting in %.2fs", sleep_for)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                break
            except asyncio.TimeoutError:
                pass

            delay = min(
                max(delay * 2, self._resilience.reconnect_initial_seconds),
                self._resilience.reconnect_max_seconds,
            )

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for message in ws:
            if self._stop_event.is_set():
                break

            if message.type == aiohttp.WSMsgType.TEXT:
                reply = self._handler.handle_text(message.data)
            elif message.type == aiohttp.WSMsgType.BINARY:
                try:
                    text = message.data.decode("utf-8")
                except UnicodeDecodeError:
                    LOGGER.error("Received a binary frame that is not UTF-8")
                    reply = ErrorResponse("Invalid command: frame is not valid UTF-8")
                else:
                    reply = self._handler.handle_text(text)
            elif message.type == aiohttp.WSMsgType.ERROR:
                raise ws.exception() or ConnectionError("WebSocket read error")
            else:
                continue

            if reply is None:
                continue
            await ws.send_str(protocol.encode(reply))
            if isinstance(reply, StatusResponse):
                await self._report_motor()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=10.0)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    def _jittered(self, delay: float) -> float:
        jitter_ratio = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        if jitter_ratio <= 0.0 or delay <= 0.0:
            return delay
        jitter = delay * jitter_ratio
        return random.uniform(max(0.0, delay - jitter), delay + jitter)

    async def _report_motor(self) -> None:
        state = self._handler.state
        await self._health.set_motor(state.direction.value, state.speed)

    async def _check_degraded(self) -> None:
        await self._health.set_counter(
            "consecutive_failures", self._consecutive_failures
        )
        threshold = self._resilience.reconnect_degraded_after
        if self._degraded or self._consecutive_failures < threshold:
            return
        self._degraded = True
        LOGGER.warning(
            "Relay unreachable after %d attempts; still retrying",
            self._consecutive_failures,
        )
        await self._health.update(
            "relay-link", False, f"failures={self._consecutive_failures}"
        )

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.debug("Connection state %s -> %s", previous.value, state.value)
        if state == ConnectionState.CONNECTED:
            await self._health.update("relay-link", True, None)
        await self._health.set_link_state(
            state.value, healthy=state == ConnectionState.CONNECTED
        )

    async def _start_health_server(self) -> Optional[HealthServer]:
        if self._config.health_port <= 0:
            return None
        server = HealthServer(
            self._health, self._config.health_host, self._config.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
            return None
        await self._health.update("health-endpoint", True, None)
        return server

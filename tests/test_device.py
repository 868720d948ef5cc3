"""Tests for the vehicle-side agent."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web

from rc_relay import protocol
from rc_relay.config import DeviceConfig, ResilienceConfig
from rc_relay.device import CommandHandler, ConnectionState, DeviceAgent
from rc_relay.motor import SimulatedMotor
from rc_relay.operator_client import OperatorClient
from rc_relay.protocol import (
    Direction,
    ErrorResponse,
    PingCommand,
    PongResponse,
    StopCommand,
)


FAST_RESILIENCE = ResilienceConfig(
    reconnect_initial_seconds=0.05,
    reconnect_max_seconds=0.1,
    reconnect_jitter_ratio=0.0,
    reconnect_degraded_after=10,
)


class ScriptedRelay:
    """Fake relay that plays one script of frames per accepted connection.

    Each frame is sent and the device's reply recorded. Every connection but
    the last is closed once its script is done, simulating a dropped link.
    """

    def __init__(self, scripts: list[list[str]]) -> None:
        self.scripts = scripts
        self.replies: list[list[str]] = []

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        index = len(self.replies)
        replies: list[str] = []
        self.replies.append(replies)
        script = self.scripts[index] if index < len(self.scripts) else []

        for text in script:
            await ws.send_str(text)
            message = await ws.receive(timeout=2.0)
            replies.append(message.data)

        if index < len(self.scripts) - 1:
            await ws.close()
            return ws

        async for message in ws:
            if message.type == WSMsgType.TEXT:
                replies.append(message.data)
        return ws


class FlakyMotor(SimulatedMotor):
    """Simulated motor whose first ``failures`` outputs raise a driver fault."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def set_direction(self, direction: Direction, speed_percent: int) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("PWM driver fault")
        super().set_direction(direction, speed_percent)


@pytest_asyncio.fixture
async def scripted_relay(unused_tcp_port_factory):
    servers: list[web.AppRunner] = []

    async def _start(scripts: list[list[str]]) -> tuple[ScriptedRelay, str]:
        relay = ScriptedRelay(scripts)
        app = web.Application()
        app.router.add_get("/", relay.handler)
        runner = web.AppRunner(app)
        await runner.setup()
        port = unused_tcp_port_factory()
        site = web.TCPSite(runner, "127.0.0.1", port)
        await site.start()
        servers.append(runner)
        return relay, f"ws://127.0.0.1:{port}/"

    try:
        yield _start
    finally:
        for runner in servers:
            await runner.cleanup()


async def _stop_agent(agent: DeviceAgent, task: asyncio.Task) -> None:
    await agent.stop()
    await asyncio.wait_for(task, timeout=2.0)


# ----------------------------------------------------------------------
# CommandHandler
# ----------------------------------------------------------------------
def test_move_then_stop_leaves_motor_stopped():
    motor = SimulatedMotor()
    handler = CommandHandler(motor)

    first = handler.handle(protocol.move(Direction.FORWARD, 50))
    assert first == protocol.status_for(Direction.FORWARD, 50)
    assert motor.get_status() == (Direction.FORWARD, 50)

    second = handler.handle(StopCommand())
    assert second == protocol.status_for(Direction.STOP, 0)
    assert motor.get_status() == (Direction.STOP, 0)
    assert handler.state.direction is Direction.STOP
    assert handler.state.speed == 0


def test_ping_does_not_touch_motor():
    motor = SimulatedMotor()
    handler = CommandHandler(motor)
    handler.handle(protocol.move(Direction.LEFT, 25))
    before = motor.get_status()

    reply = handler.handle_text('"Ping"')

    assert reply == PongResponse()
    assert motor.get_status() == before
    assert len(motor.history) == 1


def test_stop_text_replies_with_stopped_status():
    handler = CommandHandler(SimulatedMotor())

    reply = handler.handle_text('"Stop"')

    assert protocol.encode(reply) == (
        '{"Status":{"battery_level":100,"connected":true,'
        '"current_speed":0,"current_direction":"Stop"}}'
    )


@pytest.mark.parametrize(
    "text",
    [
        "{\"Stop\"}",
        "garbage",
        '{"Move":{"direction":"Forward","speed":101}}',
        '{"Move":{"direction":"Sideways","speed":10}}',
    ],
)
def test_malformed_frame_yields_error_without_side_effects(text):
    motor = SimulatedMotor()
    handler = CommandHandler(motor)
    handler.handle(protocol.move(Direction.BACKWARD, 40))

    reply = handler.handle_text(text)

    assert isinstance(reply, ErrorResponse)
    assert reply.message.startswith("Invalid command:")
    assert motor.get_status() == (Direction.BACKWARD, 40)
    assert handler.state.speed == 40


def test_move_with_stop_direction_reports_zero_speed():
    motor = SimulatedMotor()
    handler = CommandHandler(motor)

    reply = handler.handle(protocol.move(Direction.STOP, 50))

    assert reply == protocol.status_for(Direction.STOP, 0)
    assert motor.get_status() == (Direction.STOP, 0)
    assert handler.state.speed == 0


def test_unparseable_frame_yields_error():
    handler = CommandHandler(SimulatedMotor())

    reply = handler.handle_text("[" * 100000)

    assert isinstance(reply, ErrorResponse)
    assert reply.message.startswith("Invalid command:")


def test_motor_fault_leaves_state_unchanged():
    motor = FlakyMotor(failures=1)
    handler = CommandHandler(motor)

    with pytest.raises(RuntimeError, match="PWM driver fault"):
        handler.handle(protocol.move(Direction.FORWARD, 10))

    assert handler.state.direction is Direction.STOP
    assert handler.state.speed == 0
    assert handler.status() == protocol.status_for(Direction.STOP, 0)


def test_relayed_responses_are_ignored():
    motor = SimulatedMotor()
    handler = CommandHandler(motor)

    status = protocol.encode(protocol.status_for(Direction.FORWARD, 90))

    assert handler.handle_text(status) is None
    assert handler.handle_text('"Pong"') is None
    assert handler.handle_text('{"Error":"nope"}') is None
    assert list(motor.history) == []


def test_fail_safe_stop_only_acts_when_moving():
    motor = SimulatedMotor()
    handler = CommandHandler(motor)

    handler.fail_safe_stop()
    assert list(motor.history) == []

    handler.handle(protocol.move(Direction.RIGHT, 10))
    handler.fail_safe_stop()
    assert motor.history[-1] == (Direction.STOP, 0)


# ----------------------------------------------------------------------
# DeviceAgent
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_agent_answers_each_frame_in_order(scripted_relay, wait_until):
    frames = [
        protocol.encode(protocol.move(Direction.FORWARD, 50)),
        protocol.encode(PingCommand()),
        "not a command",
        protocol.encode(StopCommand()),
    ]
    relay, url = await scripted_relay([frames])
    motor = SimulatedMotor()
    agent = DeviceAgent(
        DeviceConfig(server_url=url), motor, resilience=FAST_RESILIENCE
    )

    task = asyncio.create_task(agent.run())
    try:
        await wait_until(lambda: relay.replies and len(relay.replies[0]) == 4)
    finally:
        await _stop_agent(agent, task)

    replies = [protocol.decode(text) for text in relay.replies[0]]
    assert replies[0] == protocol.status_for(Direction.FORWARD, 50)
    assert replies[1] == PongResponse()
    assert isinstance(replies[2], ErrorResponse)
    assert replies[3] == protocol.status_for(Direction.STOP, 0)
    assert list(motor.history) == [(Direction.FORWARD, 50), (Direction.STOP, 0)]
    assert agent.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_agent_reconnects_after_drop(scripted_relay, wait_until):
    relay, url = await scripted_relay(
        [
            [protocol.encode(PingCommand())],
            [protocol.encode(protocol.move(Direction.LEFT, 30))],
        ]
    )
    motor = SimulatedMotor()
    agent = DeviceAgent(
        DeviceConfig(server_url=url), motor, resilience=FAST_RESILIENCE
    )

    task = asyncio.create_task(agent.run())
    try:
        await wait_until(lambda: len(relay.replies) == 2 and relay.replies[1])
        assert agent.connect_count == 2
        assert agent.state == ConnectionState.CONNECTED
    finally:
        await _stop_agent(agent, task)

    assert protocol.decode(relay.replies[0][0]) == PongResponse()
    assert protocol.decode(relay.replies[1][0]) == protocol.status_for(
        Direction.LEFT, 30
    )
    assert agent.device_state.direction is Direction.LEFT
    assert agent.device_state.speed == 30


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stop_on_disconnect, expected",
    [
        (False, (Direction.FORWARD, 60)),
        (True, (Direction.STOP, 0)),
    ],
)
async def test_motion_after_disconnect_follows_config(
    scripted_relay, wait_until, stop_on_disconnect, expected
):
    relay, url = await scripted_relay(
        [[protocol.encode(protocol.move(Direction.FORWARD, 60))], []]
    )
    motor = SimulatedMotor()
    agent = DeviceAgent(
        DeviceConfig(server_url=url, stop_on_disconnect=stop_on_disconnect),
        motor,
        resilience=FAST_RESILIENCE,
    )

    task = asyncio.create_task(agent.run())
    try:
        await wait_until(lambda: agent.connect_count == 2)
        assert motor.get_status() == expected
    finally:
        await _stop_agent(agent, task)


@pytest.mark.asyncio
async def test_motor_fault_triggers_reconnect_instead_of_exit(
    scripted_relay, wait_until
):
    move = protocol.encode(protocol.move(Direction.FORWARD, 10))
    relay, url = await scripted_relay([[move], [move]])
    motor = FlakyMotor(failures=1)
    agent = DeviceAgent(
        DeviceConfig(server_url=url), motor, resilience=FAST_RESILIENCE
    )

    task = asyncio.create_task(agent.run())
    try:
        await wait_until(lambda: len(relay.replies) == 2 and relay.replies[1])
        assert not task.done()
        assert agent.connect_count == 2
    finally:
        await _stop_agent(agent, task)

    assert protocol.decode(relay.replies[1][0]) == protocol.status_for(
        Direction.FORWARD, 10
    )
    assert motor.get_status() == (Direction.FORWARD, 10)


@pytest.mark.asyncio
async def test_stop_interrupts_reconnect_delay(unused_tcp_port):
    resilience = ResilienceConfig(
        reconnect_initial_seconds=30.0,
        reconnect_max_seconds=60.0,
        reconnect_jitter_ratio=0.0,
    )
    agent = DeviceAgent(
        DeviceConfig(server_url=f"ws://127.0.0.1:{unused_tcp_port}/"),
        SimulatedMotor(),
        resilience=resilience,
    )

    task = asyncio.create_task(agent.run())
    await asyncio.sleep(0.2)

    await _stop_agent(agent, task)

    assert agent.connect_count == 0
    assert agent.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_health_reports_link_and_motor_output(scripted_relay, wait_until):
    relay, url = await scripted_relay(
        [[protocol.encode(protocol.move(Direction.FORWARD, 50))]]
    )
    agent = DeviceAgent(
        DeviceConfig(server_url=url), SimulatedMotor(), resilience=FAST_RESILIENCE
    )

    task = asyncio.create_task(agent.run())
    try:
        async with asyncio.timeout(2.0):
            while True:
                snapshot = await agent.health.snapshot()
                if "motor" in snapshot:
                    break
                await asyncio.sleep(0.01)
    finally:
        await _stop_agent(agent, task)

    assert snapshot["service"] == "device"
    assert snapshot["status"] == "ok"
    assert snapshot["link"]["state"] == "connected"
    assert snapshot["counters"]["connects"] == 1
    assert snapshot["motor"] == {"direction": "Forward", "speed": 50}


@pytest.mark.asyncio
async def test_repeated_failures_mark_link_degraded(unused_tcp_port):
    resilience = ResilienceConfig(
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.02,
        reconnect_jitter_ratio=0.0,
        reconnect_degraded_after=2,
    )
    agent = DeviceAgent(
        DeviceConfig(server_url=f"ws://127.0.0.1:{unused_tcp_port}/"),
        SimulatedMotor(),
        resilience=resilience,
    )

    task = asyncio.create_task(agent.run())
    try:
        async with asyncio.timeout(3.0):
            while True:
                snapshot = await agent.health.snapshot()
                components = {item["name"]: item for item in snapshot["components"]}
                if "relay-link" in components:
                    break
                await asyncio.sleep(0.02)
    finally:
        await _stop_agent(agent, task)

    assert snapshot["status"] == "degraded"
    assert components["relay-link"]["healthy"] is False


@pytest.mark.asyncio
async def test_device_status_reaches_operators_through_relay(
    relay, relay_url, wait_until
):
    motor = SimulatedMotor()
    agent = DeviceAgent(
        DeviceConfig(server_url=relay_url), motor, resilience=FAST_RESILIENCE
    )
    task = asyncio.create_task(agent.run())

    try:
        async with OperatorClient(relay_url) as operator, OperatorClient(
            relay_url
        ) as observer:
            await wait_until(lambda: relay.broadcaster.subscriber_count == 3)

            command = protocol.move(Direction.FORWARD, 50)
            await operator.send(command)

            # Direct reply from the relay, then the device's own status.
            expected = protocol.status_for(Direction.FORWARD, 50)
            assert await operator.receive() == expected
            assert await operator.receive() == expected

            assert await observer.receive() == command
            assert await observer.receive() == expected

            await wait_until(lambda: motor.get_status() == (Direction.FORWARD, 50))
    finally:
        await _stop_agent(agent, task)

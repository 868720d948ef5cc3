import asyncio
from typing import Awaitable, Callable

import pytest
import pytest_asyncio

from rc_relay.config import RelayConfig
from rc_relay.relay import RelayServer


@pytest.fixture
def relay_config(unused_tcp_port) -> RelayConfig:
    return RelayConfig(
        host="127.0.0.1",
        port=unused_tcp_port,
        subscriber_queue_size=8,
        heartbeat_seconds=0.0,
    )


@pytest_asyncio.fixture
async def relay(relay_config):
    server = RelayServer(relay_config)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest.fixture
def relay_url(relay_config) -> str:
    return f"ws://{relay_config.host}:{relay_config.port}/ws"


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or the timeout elapses."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.01)

    return _wait

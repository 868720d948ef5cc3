"""Health reporting shared by the relay and the device agent.

Both processes serve the same ``/healthz`` document::

    {
        "service": "device",
        "status": "ok",
        "components": [{"name": "relay-link", "healthy": true, ...}],
        "link": {"state": "connected", "healthy": true, "since": "..."},
        "counters": {"connects": 1},
        "motor": {"direction": "Forward", "speed": 50}
    }

``status`` is ``degraded`` (HTTP 503) when any component or the link is
unhealthy. ``link``, ``counters`` and ``motor`` only appear once reported.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


@dataclass(slots=True)
class LinkState:
    """State of the device's connection to the relay."""

    state: str
    healthy: bool
    since: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "state": self.state,
            "healthy": self.healthy,
            "since": self.since.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Collects component statuses, counters and the last motor output."""

    def __init__(self, service: str = "rc-relay") -> None:
        self.service = service
        self._components: Dict[str, ComponentStatus] = {}
        self._link: Optional[LinkState] = None
        self._counters: Dict[str, int] = {}
        self._motor: Optional[Dict[str, object]] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_link_state(self, state: str, *, healthy: bool) -> None:
        """Record the link state; ``since`` only moves when the state changes."""

        async with self._lock:
            if self._link is not None and self._link.state == state:
                self._link.healthy = healthy
                return
            self._link = LinkState(state=state, healthy=healthy)

    async def set_counter(self, name: str, value: int) -> None:
        async with self._lock:
            self._counters[name] = value

    async def set_motor(self, direction: str, speed: int) -> None:
        async with self._lock:
            self._motor = {"direction": direction, "speed": speed}

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [item.as_dict() for item in self._components.values()]
            link = self._link.as_dict() if self._link is not None else None
            counters = dict(sorted(self._counters.items()))
            motor = dict(self._motor) if self._motor is not None else None

        healthy = all(item["healthy"] for item in components)
        if link is not None and not link["healthy"]:
            healthy = False

        payload: Dict[str, object] = {
            "service": self.service,
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if link is not None:
            payload["link"] = link
        if counters:
            payload["counters"] = counters
        if motor is not None:
            payload["motor"] = motor
        return payload

    async def handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)


class HealthServer:
    """Standalone `/healthz` listener for the device agent.

    The relay mounts :meth:`HealthReporter.handle_health` on its own
    application instead.
    """

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._reporter.handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        try:
            await self._site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            raise
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

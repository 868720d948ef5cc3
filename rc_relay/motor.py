"""Motor abstraction driven by the device agent."""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from .protocol import SPEED_MAX, Direction

LOGGER = logging.getLogger(__name__)


class Motor(Protocol):
    """Minimal contract for the vehicle's drive hardware."""

    def set_direction(self, direction: Direction, speed_percent: int) -> None:
        """Apply hardware outputs for the requested motion.

        ``speed_percent`` is expected to lie in ``[0, 100]``.
        """
        ...

    def get_status(self) -> tuple[Direction, int]:
        """Return the last applied ``(direction, speed_percent)``; no side effects."""
        ...


def clamp_speed(speed_percent: int) -> int:
    return max(0, min(SPEED_MAX, int(speed_percent)))


class SimulatedMotor:
    """In-memory stand-in for the H-bridge driver.

    Used when the agent runs off-vehicle and in tests. Pin assignment and PWM
    output belong to the hardware driver that replaces this class on the car.
    """

    def __init__(self, history_size: int = 64) -> None:
        self._direction = Direction.STOP
        self._speed = 0
        # Most recent outputs only; the agent runs indefinitely.
        self.history: deque[tuple[Direction, int]] = deque(maxlen=history_size)

    def set_direction(self, direction: Direction, speed_percent: int) -> None:
        speed = 0 if direction is Direction.STOP else clamp_speed(speed_percent)
        if speed != speed_percent:
            LOGGER.debug(
                "Adjusted speed %s -> %d for direction %s",
                speed_percent,
                speed,
                direction.value,
            )
        self._direction = direction
        self._speed = speed
        self.history.append((direction, speed))
        LOGGER.info("Motor output: direction=%s speed=%d%%", direction.value, speed)

    def get_status(self) -> tuple[Direction, int]:
        return self._direction, self._speed

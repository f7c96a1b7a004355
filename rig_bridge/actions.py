"""Action table mapping traffic sign codes to rig actuation routines."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Iterable, Iterator, Mapping, Optional

from . import constants
from .core import Hub, Light, Motor

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ActionContext:
    """Capabilities handed to a routine; never the whole hardware session."""

    motor: Motor
    light: Light
    hub: Hub
    max_power: float


ActionRoutine = Callable[[ActionContext], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class Action:
    code: int
    name: str
    routine: ActionRoutine

    async def run(self, context: ActionContext) -> None:
        LOGGER.info("Handling %s...", self.name)
        await self.routine(context)


class ActionTable:
    """Read-only mapping from command code to :class:`Action`."""

    def __init__(self, actions: Iterable[Action]) -> None:
        entries: dict[int, Action] = {}
        for action in actions:
            if action.code in entries:
                raise ValueError(f"Duplicate action code {action.code}")
            entries[action.code] = action
        self._actions: Mapping[int, Action] = MappingProxyType(entries)

    def get(self, code: Optional[int]) -> Optional[Action]:
        if code is None:
            return None
        return self._actions.get(code)

    def __contains__(self, code: object) -> bool:
        return code in self._actions

    def __iter__(self) -> Iterator[int]:
        return iter(self._actions)

    def __len__(self) -> int:
        return len(self._actions)


async def speed_limit_30(context: ActionContext) -> None:
    await context.motor.set_power(context.max_power / 2)


async def speed_limit_50(context: ActionContext) -> None:
    await context.motor.set_power(context.max_power)


async def traffic_signals_ahead(context: ActionContext) -> None:
    # Recognised sign without a physical reaction yet.
    return None


async def pedestrian_crossing_ahead(context: ActionContext) -> None:
    await context.motor.ramp_power(
        context.max_power, 0, constants.PEDESTRIAN_RAMP_MS
    )
    await context.motor.brake()


async def red_traffic_light(context: ActionContext) -> None:
    await context.motor.brake()


async def green_traffic_light(context: ActionContext) -> None:
    for _ in range(constants.BLINK_COUNT):
        await context.light.set_brightness(constants.LIGHT_FULL_BRIGHTNESS)
        await context.hub.sleep(constants.BLINK_INTERVAL_MS)
        await context.light.set_brightness(0)
        await context.hub.sleep(constants.BLINK_INTERVAL_MS)
    await context.motor.ramp_power(
        context.max_power / 3, context.max_power, constants.GREEN_LIGHT_RAMP_MS
    )


async def start_rig(context: ActionContext) -> None:
    """Get the rig moving once every device is bound."""

    await context.motor.ramp_power(
        context.max_power / 3, context.max_power, constants.STARTUP_RAMP_MS
    )


def build_action_table() -> ActionTable:
    return ActionTable(
        [
            Action(0, "SpeedLimit_30", speed_limit_30),
            Action(1, "SpeedLimit_50", speed_limit_50),
            Action(2, "TrafficSignalsAhead", traffic_signals_ahead),
            Action(3, "PedestrianCrossingAhead", pedestrian_crossing_ahead),
            Action(4, "RedTrafficLight", red_traffic_light),
            Action(5, "GreenTrafficLight", green_traffic_light),
        ]
    )

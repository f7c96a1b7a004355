"""In-process simulation of a Powered UP style hub with a motor and a light.

The simulation honours the driver contract closely enough to run the bridge
end to end without hardware: hubs are discovered after a delay, connecting
takes time, devices appear on their ports once connected, and ramps take
their nominal duration scaled by ``time_scale``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from ..config import RigConfig, SimulationConfig
from ..core import DiscoverHandler

LOGGER = logging.getLogger(__name__)

_RAMP_STEPS = 10
_CONNECT_SECONDS = 0.2


class SimulatedHubError(RuntimeError):
    """Raised when an operation is attempted on a hub in the wrong state."""


def _clamp(value: float) -> int:
    return int(round(max(-100.0, min(100.0, value))))


class SimulatedMotor:
    def __init__(self, hub: "SimulatedHub", port: str) -> None:
        self._hub = hub
        self.port = port
        self.power = 0
        self.braked = False

    async def set_power(self, power: float) -> None:
        self._hub.ensure_connected()
        self.power = _clamp(power)
        self.braked = False
        LOGGER.info("[%s:%s] motor power %d", self._hub.name, self.port, self.power)

    async def ramp_power(
        self, from_power: float, to_power: float, duration_ms: int
    ) -> None:
        self._hub.ensure_connected()
        LOGGER.info(
            "[%s:%s] motor ramp %d -> %d over %dms",
            self._hub.name,
            self.port,
            _clamp(from_power),
            _clamp(to_power),
            duration_ms,
        )
        self.braked = False
        step_ms = duration_ms / _RAMP_STEPS
        for step in range(_RAMP_STEPS + 1):
            self.power = _clamp(
                from_power + (to_power - from_power) * step / _RAMP_STEPS
            )
            if step < _RAMP_STEPS:
                await self._hub.sleep(step_ms)

    async def brake(self) -> None:
        self._hub.ensure_connected()
        self.power = 0
        self.braked = True
        LOGGER.info("[%s:%s] motor brake", self._hub.name, self.port)


class SimulatedLight:
    def __init__(self, hub: "SimulatedHub", port: str) -> None:
        self._hub = hub
        self.port = port
        self.brightness = 0

    async def set_brightness(self, brightness: float) -> None:
        self._hub.ensure_connected()
        self.brightness = max(0, min(100, int(round(brightness))))
        LOGGER.info(
            "[%s:%s] light brightness %d", self._hub.name, self.port, self.brightness
        )


class SimulatedHub:
    def __init__(
        self,
        name: str,
        *,
        motor_port: str,
        light_port: str,
        time_scale: float = 1.0,
    ) -> None:
        self.name = name
        self.time_scale = time_scale
        self._connected = False
        self._connecting = False
        self._devices: Dict[str, object] = {
            motor_port: SimulatedMotor(self, motor_port),
            light_port: SimulatedLight(self, light_port),
        }

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def connecting(self) -> bool:
        return self._connecting

    def device_at(self, port: str) -> Optional[object]:
        return self._devices.get(port)

    def ensure_connected(self) -> None:
        if not self._connected:
            raise SimulatedHubError(f"Hub {self.name} is not connected")

    async def connect(self) -> None:
        if self._connected:
            return
        self._connecting = True
        try:
            await asyncio.sleep(_CONNECT_SECONDS * self.time_scale)
            if not self._connecting:
                raise SimulatedHubError(f"Connection to {self.name} was aborted")
            self._connected = True
        finally:
            self._connecting = False

    async def disconnect(self) -> None:
        self._connecting = False
        self._connected = False

    async def wait_for_device_at_port(self, port: str) -> object:
        self.ensure_connected()
        device = self._devices.get(port)
        if device is None:
            # Nothing will ever be attached to an unknown port.
            await asyncio.Event().wait()
        return device

    async def sleep(self, duration_ms: float) -> None:
        await asyncio.sleep(max(0.0, duration_ms) / 1000.0 * self.time_scale)


class SimulatedPoweredUp:
    """Driver announcing a single simulated hub after ``discovery_delay``."""

    def __init__(self, rig: RigConfig, simulation: SimulationConfig) -> None:
        self.hub = SimulatedHub(
            simulation.hub_name,
            motor_port=rig.motor_port,
            light_port=rig.light_port,
            time_scale=simulation.time_scale,
        )
        self._discovery_delay = simulation.discovery_delay_seconds
        self._handlers: List[DiscoverHandler] = []
        self._announcer: Optional[asyncio.Task[None]] = None

    @property
    def scanning(self) -> bool:
        return self._announcer is not None and not self._announcer.done()

    def on_discover(self, handler: DiscoverHandler) -> None:
        self._handlers.append(handler)

    async def scan(self) -> None:
        if self.scanning:
            return
        self._announcer = asyncio.create_task(self._announce())

    def stop_scan(self) -> None:
        announcer = self._announcer
        if announcer is not None and not announcer.done():
            if announcer is not asyncio.current_task():
                announcer.cancel()

    async def _announce(self) -> None:
        await asyncio.sleep(self._discovery_delay)
        for handler in list(self._handlers):
            result = handler(self.hub)
            if asyncio.iscoroutine(result):
                try:
                    await result
                except Exception:
                    LOGGER.exception("Discover handler failed for %s", self.hub.name)

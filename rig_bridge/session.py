"""Hardware session tracking and rig lifecycle management."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from .actions import ActionContext, start_rig
from .config import RigConfig
from .core import Hub, Light, Motor, RigDriver

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class RigBringUpError(RuntimeError):
    """Raised when the rig cannot be discovered, connected or bound."""

    def __init__(self, step: str, cause: object) -> None:
        super().__init__(f"Rig bring-up failed during {step}: {cause}")
        self.step = step


class RigState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DISCOVERED = "discovered"
    CONNECTED = "connected"
    PORTS_BOUND = "ports_bound"
    SHUTTING_DOWN = "shutting_down"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class HardwareSession:
    """Handles of the physical rig.

    The session is ready once the hub, the motor and the light are all bound.
    Handles are only ever added, except by :meth:`clear` on shutdown.
    """

    hub: Optional[Hub] = None
    motor: Optional[Motor] = None
    light: Optional[Light] = None

    @property
    def ready(self) -> bool:
        return self.hub is not None and self.motor is not None and self.light is not None

    def context(self, max_power: float) -> ActionContext:
        if self.hub is None or self.motor is None or self.light is None:
            raise RuntimeError("Hardware session is not ready")
        return ActionContext(
            motor=self.motor, light=self.light, hub=self.hub, max_power=max_power
        )

    def clear(self) -> None:
        self.hub = None
        self.motor = None
        self.light = None


class RigLifecycle:
    """Drives the hardware session from discovery to ready and back down.

    ``on_ready`` is invoked once the start-up actuation has completed; the
    application uses it to make the command dispatcher live.
    """

    def __init__(
        self,
        driver: RigDriver,
        config: RigConfig,
        *,
        session: Optional[HardwareSession] = None,
        on_ready: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[RigState], None]] = None,
    ) -> None:
        self._driver = driver
        self._config = config
        self.session = session or HardwareSession()
        self._on_ready = on_ready
        self._on_state_change = on_state_change
        self._state = RigState.IDLE
        self._hub: Optional[Hub] = None
        self._discovered: Optional[asyncio.Future[Hub]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> RigState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._state in (RigState.SHUTTING_DOWN, RigState.DISCONNECTED)

    async def bring_up(self) -> None:
        """Discover, connect and bind the rig, then run the start-up actuation.

        Failures are not retried: any error is raised as
        :class:`RigBringUpError` to the caller.
        """

        if self._state is not RigState.IDLE:
            raise RuntimeError(f"Rig lifecycle already started ({self._state.value})")

        self._loop = asyncio.get_running_loop()
        self._discovered = self._loop.create_future()
        self._driver.on_discover(self._handle_discover)

        self._set_state(RigState.SCANNING)
        LOGGER.info("Scanning for hubs...")
        await self._step("scan", self._driver.scan())

        hub = await self._discovered
        self._hub = hub

        await self._step("connect", hub.connect())
        self._ensure_running("connect")
        LOGGER.info("Connected to hub %s!", hub.name)
        self.session.hub = hub
        self._set_state(RigState.CONNECTED)

        motor = await self._step(
            f"wait for motor on port {self._config.motor_port}",
            hub.wait_for_device_at_port(self._config.motor_port),
        )
        self._ensure_running("motor binding")
        self.session.motor = motor

        light = await self._step(
            f"wait for light on port {self._config.light_port}",
            hub.wait_for_device_at_port(self._config.light_port),
        )
        self._ensure_running("light binding")
        self.session.light = light

        self._set_state(RigState.PORTS_BOUND)
        LOGGER.info("All hardware pieces have been discovered!")

        await self._step(
            "start-up actuation",
            start_rig(self.session.context(self._config.max_power)),
        )
        self._ensure_running("start-up actuation")

        if self._on_ready is not None:
            self._on_ready()

    async def shutdown(self) -> None:
        """Stop scanning and disconnect the hub if connected or connecting.

        Calling this more than once performs no further driver operations.
        """

        if self.stopping:
            return

        previous = self._state
        self._set_state(RigState.SHUTTING_DOWN)

        if previous is RigState.SCANNING:
            self._driver.stop_scan()
        if self._discovered is not None and not self._discovered.done():
            self._discovered.cancel()

        hub = self._hub
        if hub is not None and (hub.connected or hub.connecting):
            LOGGER.info("Disconnecting from hub %s...", hub.name)
            try:
                await hub.disconnect()
            except Exception:
                LOGGER.warning("Hub disconnect failed", exc_info=True)
            else:
                LOGGER.info("Hub %s disconnected!", hub.name)

        self._hub = None
        self.session.clear()
        self._set_state(RigState.DISCONNECTED)

    def _handle_discover(self, hub: Hub) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._accept_hub, hub)

    def _accept_hub(self, hub: Hub) -> None:
        future = self._discovered
        if self._state is not RigState.SCANNING or future is None or future.done():
            LOGGER.debug("Ignoring additional hub %s", getattr(hub, "name", hub))
            return

        LOGGER.info("Discovered %s!", hub.name)
        # At most one rig is ever used.
        self._driver.stop_scan()
        self._set_state(RigState.DISCOVERED)
        future.set_result(hub)

    async def _step(self, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RigBringUpError:
            raise
        except Exception as exc:
            raise RigBringUpError(step, exc) from exc

    def _ensure_running(self, step: str) -> None:
        if self.stopping:
            raise RigBringUpError(step, "shutdown in progress")

    def _set_state(self, state: RigState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.debug("Rig state transition %s -> %s", previous.value, state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

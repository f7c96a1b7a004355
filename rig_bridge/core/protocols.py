"""Protocol definitions for hub drivers and the devices they expose."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol, runtime_checkable


class Motor(Protocol):
    """Motor attached to a hub port."""

    async def set_power(self, power: float) -> None:
        """Run the motor at a constant power level (0-100)."""
        ...

    async def ramp_power(
        self, from_power: float, to_power: float, duration_ms: int
    ) -> None:
        """Ramp linearly between two power levels over ``duration_ms``.

        Completes once the target power has been reached.
        """
        ...

    async def brake(self) -> None:
        """Bring the motor to a full stop."""
        ...


class Light(Protocol):
    """Light attached to a hub port."""

    async def set_brightness(self, brightness: float) -> None:
        """Set brightness (0-100)."""
        ...


class Hub(Protocol):
    """Hub controller found during discovery."""

    name: str

    @property
    def connected(self) -> bool: ...

    @property
    def connecting(self) -> bool: ...

    async def connect(self) -> None:
        """Perform the connection handshake with the hub."""
        ...

    async def disconnect(self) -> None: ...

    async def wait_for_device_at_port(self, port: str) -> object:
        """Block until a device is attached to ``port`` and return its handle."""
        ...

    async def sleep(self, duration_ms: int) -> None:
        """Pause for ``duration_ms`` on the hub's clock."""
        ...


DiscoverHandler = Callable[[Hub], Awaitable[None] | None]


@runtime_checkable
class RigDriver(Protocol):
    """Entry point of a hub driver: discovery of compatible hubs."""

    def on_discover(self, handler: DiscoverHandler) -> None:
        """Register a callback invoked for every discovered hub."""
        ...

    async def scan(self) -> None:
        """Start scanning for hubs."""
        ...

    def stop_scan(self) -> None:
        """Stop scanning; no further discover events are emitted."""
        ...

"""Shared fakes for the hub driver and its devices."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest


class FakeMotor:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self.calls = calls
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None

    async def _actuate(self, *call: Any) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def set_power(self, power: float) -> None:
        await self._actuate("set_power", power)

    async def ramp_power(
        self, from_power: float, to_power: float, duration_ms: int
    ) -> None:
        await self._actuate("ramp_power", from_power, to_power, duration_ms)

    async def brake(self) -> None:
        await self._actuate("brake")


class FakeLight:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self.calls = calls

    async def set_brightness(self, brightness: float) -> None:
        self.calls.append(("set_brightness", brightness))


class FakeHub:
    def __init__(self, name: str = "Fake Hub") -> None:
        self.name = name
        self.calls: list[tuple[Any, ...]] = []
        self.motor = FakeMotor(self.calls)
        self.light = FakeLight(self.calls)
        self.ports: dict[str, object] = {"A": self.motor, "B": self.light}
        self.connect_error: Optional[Exception] = None
        self.connect_gate: Optional[asyncio.Event] = None
        self.disconnect_calls = 0
        self._connected = False
        self._connecting = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def connecting(self) -> bool:
        return self._connecting

    async def connect(self) -> None:
        self.calls.append(("connect",))
        self._connecting = True
        try:
            if self.connect_gate is not None:
                await self.connect_gate.wait()
            if self.connect_error is not None:
                raise self.connect_error
            self._connected = True
        finally:
            self._connecting = False

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.calls.append(("disconnect",))
        self._connected = False
        self._connecting = False

    async def wait_for_device_at_port(self, port: str) -> object:
        self.calls.append(("wait_for_device_at_port", port))
        device = self.ports.get(port)
        if device is None:
            raise LookupError(f"no device on port {port}")
        return device

    async def sleep(self, duration_ms: int) -> None:
        self.calls.append(("sleep", duration_ms))
        await asyncio.sleep(0)


class FakeDriver:
    """Driver that announces its hubs as soon as scanning starts."""

    def __init__(self, *hubs: FakeHub, announce: bool = True) -> None:
        self.hubs = list(hubs)
        self.announce = announce
        self.handlers: list[Any] = []
        self.scan_calls = 0
        self.stop_scan_calls = 0
        self.scan_error: Optional[Exception] = None

    def on_discover(self, handler) -> None:
        self.handlers.append(handler)

    async def scan(self) -> None:
        self.scan_calls += 1
        if self.scan_error is not None:
            raise self.scan_error
        if self.announce:
            for hub in self.hubs:
                self.discover(hub)

    def stop_scan(self) -> None:
        self.stop_scan_calls += 1

    def discover(self, hub: FakeHub) -> None:
        for handler in self.handlers:
            handler(hub)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
def driver(hub: FakeHub) -> FakeDriver:
    return FakeDriver(hub)

"""Tests for RigBridgeApp start-up, command flow and shutdown."""

from __future__ import annotations

import asyncio
from configparser import ConfigParser
from pathlib import Path
from typing import Optional

import pytest

from conftest import FakeDriver, wait_for
from rig_bridge.adapters import MQTTConnectionError
from rig_bridge.app import AgentState, RigBridgeApp
from rig_bridge.config import (
    BridgeConfig,
    BrokerConfig,
    HealthConfig,
    LoggingConfig,
    RigConfig,
    SimulationConfig,
)
from rig_bridge.dispatcher import Idle


def _build_config(*, max_power: int = 50, backend: str = "simulated") -> BridgeConfig:
    return BridgeConfig(
        broker=BrokerConfig(host="broker.local", port=1883, topic="train-command"),
        rig=RigConfig(backend=backend, max_power=max_power),
        simulation=SimulationConfig(discovery_delay_seconds=0.0, time_scale=0.0),
        logging=LoggingConfig(),
        health=HealthConfig(),
        raw=ConfigParser(),
        path=Path("rig-bridge.cfg"),
    )


class FakeMQTT:
    def __init__(self, *, connect_error: Optional[Exception] = None) -> None:
        self.connect_error = connect_error
        self.connect_gate: Optional[asyncio.Event] = None
        self.handler = None
        self.connect_handlers: list = []
        self.disconnect_handlers: list = []
        self.subscriptions: list[tuple[str, int]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connected = False

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    async def connect(self, timeout: float = 30.0) -> None:
        self.connect_calls += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        loop = asyncio.get_running_loop()
        for handler in self.connect_handlers:
            loop.call_soon(handler, 0)

    async def disconnect(self, timeout: float = 5.0) -> None:
        if self.connected:
            self.disconnect_calls += 1
        self.connected = False

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append((topic, qos))

    def is_connected(self) -> bool:
        return self.connected

    def reconnect(self) -> None:
        self.connected = True
        for handler in self.connect_handlers:
            handler(0)

    def emit(self, payload: bytes, topic: str = "train-command") -> None:
        assert self.handler is not None
        self.handler(topic, payload)


async def _start(app: RigBridgeApp) -> asyncio.Task[int]:
    task = asyncio.create_task(app.run())
    await wait_for(lambda: app.state is AgentState.ACTIVE or task.done())
    return task


@pytest.mark.asyncio
async def test_app_runs_commands_and_shuts_down(driver, hub):
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    task = await _start(app)

    assert app.state is AgentState.ACTIVE
    assert app.dispatcher.state == Idle()
    assert mqtt.subscriptions == [("train-command", 0)]

    mqtt.emit(b"1")
    await wait_for(lambda: hub.calls[-1] == ("set_power", 50))
    await app.dispatcher.wait_idle()

    mqtt.emit(b"99")
    mqtt.emit(b"1")
    await app.dispatcher.drain()
    await app.dispatcher.wait_idle()
    assert hub.calls[-1] == ("set_power", 50)
    assert [c for c in hub.calls if c[0] == "set_power"] == [("set_power", 50)]

    app.request_shutdown()
    assert await task == 0

    assert app.state is AgentState.STOPPED
    assert mqtt.disconnect_calls == 1
    assert hub.disconnect_calls == 1
    assert app.session.ready is False


@pytest.mark.asyncio
async def test_commands_before_rig_ready_are_ignored(hub):
    driver = FakeDriver(hub, announce=False)
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    task = asyncio.create_task(app.run())
    await wait_for(lambda: mqtt.subscriptions)

    mqtt.emit(b"4")
    await app.dispatcher.drain()
    assert hub.calls == []
    assert app.dispatcher.last_code is None

    driver.discover(hub)
    await wait_for(lambda: app.state is AgentState.ACTIVE)

    mqtt.emit(b"4")
    await wait_for(lambda: hub.calls[-1] == ("brake",))

    app.request_shutdown()
    assert await task == 0


@pytest.mark.asyncio
async def test_bring_up_failure_exits_with_error(driver, hub):
    hub.connect_error = ConnectionError("refused")
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    assert await app.run() == 1

    assert mqtt.disconnect_calls == 1
    assert app.state is AgentState.STOPPED


@pytest.mark.asyncio
async def test_mqtt_connect_failure_keeps_bridge_running(driver, hub):
    mqtt = FakeMQTT(connect_error=MQTTConnectionError("Timed out"))
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    task = await _start(app)
    await wait_for(lambda: app._mqtt_task is not None and app._mqtt_task.done())

    assert app.state is AgentState.ACTIVE
    assert mqtt.subscriptions == []
    snapshot = await app._health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["mqtt"]["healthy"] is False
    assert components["mqtt"]["detail"] == "Timed out"

    mqtt.reconnect()
    assert mqtt.subscriptions == [("train-command", 0)]

    mqtt.emit(b"4")
    await wait_for(lambda: bool(hub.calls) and hub.calls[-1] == ("brake",))

    app.request_shutdown()
    assert await task == 0
    assert hub.disconnect_calls == 1
    assert app.state is AgentState.STOPPED


@pytest.mark.asyncio
async def test_shutdown_while_broker_connect_pending(driver, hub):
    mqtt = FakeMQTT()
    mqtt.connect_gate = asyncio.Event()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    task = await _start(app)
    assert app.state is AgentState.ACTIVE
    assert mqtt.connect_calls == 1

    app.request_shutdown()
    assert await asyncio.wait_for(task, timeout=2.0) == 0
    assert mqtt.subscriptions == []
    assert hub.disconnect_calls == 1
    assert app.state is AgentState.STOPPED


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(driver, hub):
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)
    task = await _start(app)

    await app.shutdown()
    await app.shutdown()
    app.request_shutdown()
    assert await task == 0

    assert mqtt.disconnect_calls == 1
    assert hub.disconnect_calls == 1


@pytest.mark.asyncio
async def test_shutdown_before_start_performs_no_operations(driver, hub):
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)

    await app.shutdown()

    assert mqtt.connect_calls == 0
    assert mqtt.disconnect_calls == 0
    assert driver.scan_calls == 0
    assert hub.disconnect_calls == 0
    assert app.state is AgentState.STOPPED


@pytest.mark.asyncio
async def test_shutdown_does_not_wait_for_hung_action(driver, hub):
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)
    task = await _start(app)

    hub.motor.gate = asyncio.Event()
    mqtt.emit(b"3")
    await wait_for(lambda: hub.calls[-1] == ("ramp_power", 50, 0, 2000))

    app.request_shutdown()
    assert await asyncio.wait_for(task, timeout=2.0) == 0
    assert hub.disconnect_calls == 1


@pytest.mark.asyncio
async def test_app_runs_with_simulated_backend():
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(max_power=40), mqtt_client=mqtt)

    task = await _start(app)
    assert app.state is AgentState.ACTIVE

    mqtt.emit(b"0")
    await wait_for(lambda: app.dispatcher.last_code == 0)
    await app.dispatcher.wait_idle()
    assert app.session.motor.power == 20

    app.request_shutdown()
    assert await task == 0
    assert app.session.hub is None


@pytest.mark.asyncio
async def test_scheduled_updates_are_held_until_done(driver, hub):
    mqtt = FakeMQTT()
    app = RigBridgeApp(_build_config(), driver=driver, mqtt_client=mqtt)
    task = await _start(app)
    await wait_for(lambda: not app._background_tasks)

    app._schedule_health_update("rig", True, "ports_bound")
    assert len(app._background_tasks) == 1

    await wait_for(lambda: not app._background_tasks)
    snapshot = await app._health.snapshot()
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["rig"]["detail"] == "ports_bound"

    app.request_shutdown()
    assert await task == 0

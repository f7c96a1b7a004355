"""Main application entry-point for rig-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from enum import Enum
from typing import Optional

from . import constants
from .actions import build_action_table
from .adapters import MQTTClient, MQTTConnectionError
from .backends import create_driver
from .config import BridgeConfig, load_config
from .core import RigDriver
from .dispatcher import Busy, CommandDispatcher, DispatchState
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .session import HardwareSession, RigBringUpError, RigLifecycle, RigState

LOGGER = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class AgentState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_RIG = "awaiting_rig"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class RigBridgeApp:
    """Coordinates start-up, the running bridge and orderly shutdown.

    The bridge connects two independent event sources, MQTT message arrival
    and hub discovery, to a single command dispatcher running on the event
    loop. Shutdown disconnects both the broker and the hub before returning.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        driver: Optional[RigDriver] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config or load_config()
        self._driver = driver
        self._mqtt_client = mqtt_client
        self._session = HardwareSession()
        self._dispatcher = CommandDispatcher(
            build_action_table(),
            self._session,
            max_power=self._config.rig.max_power,
            on_state_change=self._on_dispatch_state_change,
        )
        self._lifecycle: Optional[RigLifecycle] = None
        self._bring_up_task: Optional[asyncio.Task[None]] = None
        self._mqtt_task: Optional[asyncio.Task[None]] = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._shutdown_started = False
        self._state = AgentState.COLD_START

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def session(self) -> HardwareSession:
        return self._session

    async def run(self) -> int:
        """Run the bridge until a shutdown request or a fatal start-up error.

        Returns the process exit status.
        """

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()

        LOGGER.info("%s starting with config: %s", constants.APP_NAME, self._config.path)
        try:
            await self._start_services()
            return await self._wait_for_exit()
        finally:
            await self.shutdown()
            self._remove_signal_handlers()

    def request_shutdown(self) -> None:
        if self._shutdown_event is None or self._shutdown_event.is_set():
            return
        LOGGER.info("%s received shutdown signal", constants.APP_NAME)
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Disconnect from the broker and the hub; safe to call repeatedly."""

        if self._shutdown_started:
            return
        self._shutdown_started = True
        await self._transition_state(AgentState.STOPPING)

        await self._dispatcher.stop()
        await self._cancel_mqtt_connect()

        pending = []
        if self._mqtt_client is not None:
            pending.append(self._disconnect_mqtt(self._mqtt_client))
        if self._lifecycle is not None:
            pending.append(self._lifecycle.shutdown())

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                LOGGER.warning("Error during cleanup: %s", result)

        await self._dispatcher.abandon()
        await self._cancel_bring_up()
        await self._stop_health_server()

        LOGGER.info("Cleanup done!")
        await self._transition_state(AgentState.STOPPED)

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
            return 0

    async def _start_services(self) -> None:
        await self._health.set_agent_state(self._state.value, healthy=False)
        await self._health.update("mqtt", False, "initialising")
        await self._health.update("rig", False, RigState.IDLE.value)
        await self._health.update("dispatcher", False, "awaiting rig")
        await self._start_health_server()

        await self._dispatcher.start()

        driver = self._driver or create_driver(self._config)
        self._driver = driver
        self._lifecycle = RigLifecycle(
            driver,
            self._config.rig,
            session=self._session,
            on_ready=self._on_rig_ready,
            on_state_change=self._on_rig_state_change,
        )

        await self._transition_state(AgentState.AWAITING_RIG)
        self._bring_up_task = asyncio.create_task(self._lifecycle.bring_up())
        self._mqtt_task = asyncio.create_task(self._connect_mqtt())

    async def _connect_mqtt(self) -> None:
        broker = self._config.broker
        if self._mqtt_client is None:
            self._mqtt_client = MQTTClient(broker, client_id=_build_client_id(self._config))

        client = self._mqtt_client
        client.register_connect_handler(self._on_mqtt_connect)
        client.register_disconnect_handler(self._on_mqtt_disconnect)
        client.set_message_handler(self._dispatcher.handle_message)

        try:
            await client.connect()
        except MQTTConnectionError as exc:
            # The client keeps retrying; _on_mqtt_connect subscribes once it succeeds.
            LOGGER.warning(
                "Unable to connect to MQTT broker %s: %s; retrying in the background",
                broker.url,
                exc,
            )
            await self._health.update("mqtt", False, str(exc))

    async def _wait_for_exit(self) -> int:
        assert self._shutdown_event is not None
        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        waiters: set[asyncio.Task] = {shutdown_waiter}
        if self._bring_up_task is not None:
            waiters.add(self._bring_up_task)

        try:
            while True:
                done, _ = await asyncio.wait(
                    waiters, return_when=asyncio.FIRST_COMPLETED
                )
                if shutdown_waiter in done:
                    return 0

                bring_up = self._bring_up_task
                if bring_up is not None and bring_up in done:
                    waiters.discard(bring_up)
                    if bring_up.cancelled():
                        continue
                    exc = bring_up.exception()
                    if exc is not None:
                        LOGGER.error("Rig bring-up failed: %s", exc, exc_info=exc)
                        await self._transition_state(AgentState.FAILED)
                        return 1
        finally:
            shutdown_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_waiter

    async def _disconnect_mqtt(self, client: MQTTClient) -> None:
        if client.is_connected():
            LOGGER.info("Disconnecting from MQTT broker %s...", self._config.broker.url)
        await client.disconnect()
        await self._health.update("mqtt", False, "shutdown")

    async def _cancel_mqtt_connect(self) -> None:
        task = self._mqtt_task
        self._mqtt_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cancel_bring_up(self) -> None:
        task = self._bring_up_task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except RigBringUpError as exc:
            LOGGER.debug("Rig bring-up ended during shutdown: %s", exc)
        self._bring_up_task = None

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
        else:
            self._health_server = server

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None

    async def _transition_state(self, state: AgentState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.info("Agent state transition %s -> %s", previous.value, state.value)
        await self._health.set_agent_state(
            state.value, healthy=state == AgentState.ACTIVE
        )

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None:
            return
        self._track(loop.create_task(self._health.update(name, healthy, detail)))

    def _schedule_state_transition(self, state: AgentState) -> None:
        loop = self._loop
        if loop is None:
            return
        self._track(loop.create_task(self._transition_state(state)))

    def _track(self, task: asyncio.Task[None]) -> None:
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ------------------------------------------------------------------
    # Event source callbacks, all invoked on the event loop
    # ------------------------------------------------------------------
    def _on_mqtt_connect(self, rc: int) -> None:
        client = self._mqtt_client
        if client is None or self._shutdown_started:
            return

        topic = self._config.broker.topic
        try:
            client.subscribe(topic, qos=self._config.broker.qos)
        except (MQTTConnectionError, RuntimeError) as exc:
            LOGGER.error("Failed to subscribe to topic %s: %s", topic, exc)
            self._schedule_health_update("mqtt", False, f"subscribe failed: {exc}")
            return

        LOGGER.info("Subscribed to topic %s!", topic)
        self._schedule_health_update("mqtt", True, f"subscribed to {topic}")

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._shutdown_started:
            return
        LOGGER.warning("Disconnected from MQTT server (rc=%s)", rc)
        self._schedule_health_update("mqtt", False, f"disconnected (rc={rc})")

    def _on_rig_ready(self) -> None:
        if self._shutdown_started:
            return
        self._dispatcher.activate()
        self._schedule_state_transition(AgentState.ACTIVE)

    def _on_rig_state_change(self, state: RigState) -> None:
        self._schedule_health_update(
            "rig", state is RigState.PORTS_BOUND, state.value
        )

    def _on_dispatch_state_change(self, state: DispatchState) -> None:
        if isinstance(state, Busy):
            detail = "starting" if state.code is None else f"running {state.code}"
        else:
            detail = "idle"
        self._schedule_health_update("dispatcher", True, detail)

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in _SHUTDOWN_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, self.request_shutdown)

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in _SHUTDOWN_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)


def _build_client_id(config: BridgeConfig) -> str:
    if config.broker.client_id:
        return config.broker.client_id
    return f"{constants.APP_NAME}-{os.getpid()}"

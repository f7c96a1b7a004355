"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


def _reason_value(reason_code: Any) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
    ) -> None:
        self.config = config
        self.client_id = client_id

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id
        )
        client.enable_logger(logging.getLogger(f"{__name__}.paho"))

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s...",
            self.config.host,
            self.config.port,
        )

        client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        client.loop_start()

        # On failure the network loop keeps retrying in the background until
        # disconnect() is called.
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        if self._last_connect_rc is None or self._last_connect_rc != 0:
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={self._last_connect_rc})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        if not self._connected:
            self._client.loop_stop()
            self._client = None
            return

        LOGGER.info("Disconnecting from MQTT broker...")
        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def subscribe(self, topic: str, qos: int = 0) -> None:
        if not self._client:
            raise RuntimeError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info(
                "Connected to MQTT broker %s:%s!", self.config.host, self.config.port
            )
            self._connected = True
            if self._loop:
                self._loop.call_soon_threadsafe(self._set_event, self._connected_event)
                for handler in self._connect_handlers:
                    self._loop.call_soon_threadsafe(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", reason_code)
            self._connected = False
            if self._loop:
                self._loop.call_soon_threadsafe(self._set_event, self._connected_event)

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", reason_code)
        self._connected = False
        if self._loop:
            self._loop.call_soon_threadsafe(self._set_event, self._disconnect_event)
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, rc)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        handler = self._message_handler
        if handler is None:
            return

        try:
            handler(message.topic, message.payload)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")

    @staticmethod
    def _set_event(event: Optional[asyncio.Event]) -> None:
        if event is not None:
            event.set()

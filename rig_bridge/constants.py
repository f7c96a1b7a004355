"""Constants used across the rig-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "rig-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_URL = "mqtt://localhost:1883"
DEFAULT_COMMAND_TOPIC = "train-command"

DEFAULT_MOTOR_MAX_POWER = 50
DEFAULT_MOTOR_PORT = "A"
DEFAULT_LIGHT_PORT = "B"
DEFAULT_BACKEND = "simulated"

# Actuation timings, in milliseconds.
STARTUP_RAMP_MS = 5000
PEDESTRIAN_RAMP_MS = 2000
GREEN_LIGHT_RAMP_MS = 5000
BLINK_INTERVAL_MS = 250
BLINK_COUNT = 2
LIGHT_FULL_BRIGHTNESS = 100

ENV_BROKER_URL = "MQTT_BROKER_URL"
ENV_COMMAND_TOPIC = "MQTT_TOPIC"
ENV_MOTOR_MAX_POWER = "LEGO_MOTOR_MAX_POWER"
ENV_BACKEND = "RIG_BACKEND"
ENV_LOG_LEVEL = "RIG_BRIDGE_LOG_LEVEL"

"""Hub driver implementations."""

from __future__ import annotations

from ..config import BridgeConfig
from ..core import RigDriver
from .simulated import SimulatedHub, SimulatedPoweredUp


class RigConfigurationError(RuntimeError):
    """Raised when the configured rig backend cannot be created."""


def create_driver(config: BridgeConfig) -> RigDriver:
    """Build the hub driver selected by ``[rig] backend``."""

    backend = config.rig.backend
    if backend == "simulated":
        return SimulatedPoweredUp(config.rig, config.simulation)
    raise RigConfigurationError(f"Unknown rig backend: {backend!r}")


__all__ = [
    "RigConfigurationError",
    "SimulatedHub",
    "SimulatedPoweredUp",
    "create_driver",
]

"""Core primitives for rig-bridge."""

from .protocols import DiscoverHandler, Hub, Light, Motor, RigDriver

__all__ = [
    "DiscoverHandler",
    "Hub",
    "Light",
    "Motor",
    "RigDriver",
]

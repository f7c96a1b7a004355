"""Bridge between an MQTT traffic-sign feed and a motorised hub rig."""

__version__ = "0.1.0"

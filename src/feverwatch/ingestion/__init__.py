"""Ingestion layer.

Adapters that receive raw device traffic (MQTT) and hand normalized
readings, status updates and alerts to the alert pipeline.
"""

from feverwatch.ingestion.mqtt import build_reading, route_device_message

__all__ = ["build_reading", "route_device_message"]

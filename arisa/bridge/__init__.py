"""Daemon → core message bridge: delivery pipeline, health probe, fallback path."""

from arisa.bridge.fallback import FallbackResponder
from arisa.bridge.health import HealthProbe
from arisa.bridge.pipeline import DeliveryPipeline, DeliveryPolicy, DeliveryResult, DeliveryState

__all__ = [
    "DeliveryPipeline",
    "DeliveryPolicy",
    "DeliveryResult",
    "DeliveryState",
    "FallbackResponder",
    "HealthProbe",
]

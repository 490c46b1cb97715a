"""Transport adapters that deliver engine messages between peers."""

from .mqtt import MQTTTransport

__all__ = ["MQTTTransport"]

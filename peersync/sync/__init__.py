"""HTTP state synchronization between peers.

Lets a peer pull another peer's current state over HTTP, typically right
after discovering it, instead of waiting for its next broadcast.
"""

from .http_client import StateSyncClient

__all__ = ["StateSyncClient"]

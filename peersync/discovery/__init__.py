"""mDNS/Zeroconf peer discovery."""

from .mdns import DiscoveryManager, ServiceAnnouncer, ServiceBrowser

__all__ = ["DiscoveryManager", "ServiceAnnouncer", "ServiceBrowser"]

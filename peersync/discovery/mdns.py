"""mDNS/Zeroconf discovery of peers on the local network.

Each peer announces ``{peer_id}.{service_type}.local.`` with its peer id and
namespace in the TXT record. Browsers report peers of their own namespace
through peer-joined/peer-left callbacks, which map onto
ReconciliationEngine.add_peer/remove_peer.
"""

import asyncio
import logging
import socket
from datetime import datetime, timedelta
from typing import Any, Callable

from zeroconf import ServiceInfo, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

PeerCallback = Callable[[str, dict[str, Any]], None]

TXT_PEER_ID = b"peer_id"
TXT_NAMESPACE = b"namespace"
INFO_TIMEOUT_MS = 3000


def _fqdn(service_type: str) -> str:
    return f"{service_type}.local."


class ServiceAnnouncer:
    """Announces this peer's HTTP state API via mDNS."""

    def __init__(
        self,
        peer_id: str,
        namespace: str,
        port: int,
        service_type: str = "_peersync._tcp",
    ):
        """Initialize the announcer.

        Args:
            peer_id: Identifier of the local peer.
            namespace: Reconciliation namespace the peer belongs to.
            port: Port of the peer's HTTP state API.
            service_type: mDNS service type without the ``.local.`` suffix.
        """
        self.peer_id = peer_id
        self.namespace = namespace
        self.port = port
        self.service_type = service_type
        self._aiozc: AsyncZeroconf | None = None
        self._info: ServiceInfo | None = None

    def _build_info(self) -> ServiceInfo:
        hostname = socket.gethostname()
        address = socket.gethostbyname(hostname)
        return ServiceInfo(
            _fqdn(self.service_type),
            f"{self.peer_id}.{_fqdn(self.service_type)}",
            addresses=[socket.inet_aton(address)],
            port=self.port,
            properties={
                TXT_PEER_ID: self.peer_id.encode("utf-8"),
                TXT_NAMESPACE: self.namespace.encode("utf-8"),
            },
            server=f"{hostname}.local.",
        )

    async def start(self) -> None:
        self._info = self._build_info()
        self._aiozc = AsyncZeroconf()
        await self._aiozc.async_register_service(self._info)
        logger.info(f"Announcing {self._info.name} on port {self.port}")

    async def stop(self) -> None:
        if self._aiozc is None:
            return
        if self._info is not None:
            await self._aiozc.async_unregister_service(self._info)
        await self._aiozc.async_close()
        self._aiozc = None
        logger.info(f"Stopped announcing {self.peer_id}")


class ServiceBrowser:
    """Browses for peers of one namespace and keeps a TTL-bounded cache."""

    def __init__(
        self,
        peer_id: str,
        namespace: str,
        service_type: str = "_peersync._tcp",
        cache_ttl_seconds: int = 300,
        on_peer_joined: PeerCallback | None = None,
        on_peer_left: PeerCallback | None = None,
    ):
        """Initialize the browser.

        Args:
            peer_id: Identifier of the local peer, which is never reported.
            namespace: Only peers announcing this namespace are reported.
            service_type: mDNS service type to browse for.
            cache_ttl_seconds: Age after which a cached peer is dropped.
            on_peer_joined: Called with (peer_id, info) for new peers.
            on_peer_left: Called with (peer_id, info) for removed peers.
        """
        self.peer_id = peer_id
        self.namespace = namespace
        self.service_type = service_type
        self.cache_ttl_seconds = cache_ttl_seconds
        self.on_peer_joined = on_peer_joined
        self.on_peer_left = on_peer_left

        # Keyed by mDNS service name
        self._discovered: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._aiozc: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._pending: set[asyncio.Task] = set()

    def _on_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        # AsyncServiceBrowser calls handlers on the event loop
        if state_change is ServiceStateChange.Added:
            coro = self._add_service(zeroconf, service_type, name)
        elif state_change is ServiceStateChange.Removed:
            coro = self._remove_service(name)
        else:
            return
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _peer_from_info(self, name: str, info: AsyncServiceInfo) -> dict[str, Any] | None:
        """Turn resolved service info into a peer entry, or None to ignore it."""
        txt = info.properties or {}
        raw_id = txt.get(TXT_PEER_ID) or name.split(".", 1)[0].encode("utf-8")
        raw_namespace = txt.get(TXT_NAMESPACE) or b"default"
        peer_id = raw_id.decode("utf-8")
        namespace = raw_namespace.decode("utf-8")

        if peer_id == self.peer_id or namespace != self.namespace:
            return None

        host = socket.inet_ntoa(info.addresses[0])
        return {
            "peer_id": peer_id,
            "namespace": namespace,
            "url": f"http://{host}:{info.port}",
            "port": info.port,
            "last_seen": datetime.now(),
        }

    async def _add_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        await info.async_request(zeroconf, INFO_TIMEOUT_MS)
        if not info.addresses:
            logger.debug(f"No address resolved for {name}")
            return

        entry = self._peer_from_info(name, info)
        if entry is None:
            return

        async with self._lock:
            known = name in self._discovered
            self._discovered[name] = entry

        if known:
            return
        logger.info(f"Discovered peer {entry['peer_id']} at {entry['url']}")
        if self.on_peer_joined:
            self.on_peer_joined(entry["peer_id"], dict(entry))

    async def _remove_service(self, name: str) -> None:
        async with self._lock:
            entry = self._discovered.pop(name, None)

        if entry is None:
            return
        logger.info(f"Peer {entry['peer_id']} left the network")
        if self.on_peer_left:
            self.on_peer_left(entry["peer_id"], dict(entry))

    def _prune(self) -> None:
        cutoff = datetime.now() - timedelta(seconds=self.cache_ttl_seconds)
        stale = [name for name, entry in self._discovered.items() if entry["last_seen"] <= cutoff]
        for name in stale:
            del self._discovered[name]

    async def start(self) -> None:
        self._aiozc = AsyncZeroconf()
        self._browser = AsyncServiceBrowser(
            self._aiozc.zeroconf,
            _fqdn(self.service_type),
            handlers=[self._on_state_change],
        )
        logger.info(f"Browsing for {self.service_type} peers in namespace {self.namespace}")

    async def stop(self) -> None:
        if self._browser is not None:
            await self._browser.async_cancel()
            self._browser = None
        for task in list(self._pending):
            task.cancel()
        if self._aiozc is not None:
            await self._aiozc.async_close()
            self._aiozc = None
        logger.info("Stopped browsing")

    async def get_discovered_peers(self) -> list[dict[str, Any]]:
        """Get the cached peers, dropping entries older than the TTL."""
        async with self._lock:
            self._prune()
            return [dict(entry) for entry in self._discovered.values()]


class DiscoveryManager:
    """Runs announcement and browsing together, each optional."""

    def __init__(
        self,
        peer_id: str,
        namespace: str,
        port: int,
        service_type: str = "_peersync._tcp",
        announce: bool = True,
        browse: bool = True,
        cache_ttl_seconds: int = 300,
        on_peer_joined: PeerCallback | None = None,
        on_peer_left: PeerCallback | None = None,
    ):
        self.peer_id = peer_id
        self.namespace = namespace
        self.port = port

        self._announcer = (
            ServiceAnnouncer(peer_id, namespace, port, service_type) if announce else None
        )
        self._browser = (
            ServiceBrowser(
                peer_id,
                namespace,
                service_type,
                cache_ttl_seconds,
                on_peer_joined=on_peer_joined,
                on_peer_left=on_peer_left,
            )
            if browse
            else None
        )

    async def start(self) -> None:
        for component in (self._announcer, self._browser):
            if component is not None:
                await component.start()
        logger.info(
            f"Discovery started (announce={self._announcer is not None}, "
            f"browse={self._browser is not None})"
        )

    async def stop(self) -> None:
        for component in (self._announcer, self._browser):
            if component is not None:
                await component.stop()
        logger.info("Discovery stopped")

    async def get_discovered_peers(self) -> list[dict[str, Any]]:
        if self._browser is None:
            return []
        return await self._browser.get_discovered_peers()

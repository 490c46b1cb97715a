"""Mesh node wiring a reconciliation engine to transports and discovery."""

import asyncio
import logging
from typing import Any

from .config import Config
from .discovery import DiscoveryManager
from .engine import ReconciliationEngine
from .events import EngineEvent
from .messages import PeerMessage
from .sync import StateSyncClient
from .transport import MQTTTransport

logger = logging.getLogger(__name__)


class MeshNode:
    """Feeds peer presence and inbound messages into an engine.

    The engine only sees add_peer/remove_peer/handle_message calls and
    emits MESSAGE_SEND events, which this node publishes over MQTT, or
    posts to discovered peers' HTTP APIs when MQTT is disabled.
    """

    def __init__(self, config: Config, engine: ReconciliationEngine | None = None):
        """Initialize the node.

        Args:
            config: Node configuration.
            engine: Engine to drive. Built from the config when omitted.

        Raises:
            ConfigurationError: If the configured strategy is invalid.
        """
        self.config = config
        self.engine = engine or ReconciliationEngine(
            peer_id=config.node.peer_id,
            strategy=config.reconciliation.strategy,
            sync_interval=config.reconciliation.sync_interval_seconds,
        )
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        # Discovered HTTP base URLs, used when MQTT is disabled
        self._peer_urls: dict[str, str] = {}

        self._transport: MQTTTransport | None = None
        if config.mqtt.enabled:
            self._transport = MQTTTransport(
                config.mqtt,
                peer_id=config.node.peer_id,
                namespace=config.node.namespace,
                on_message=self.engine.handle_message,
                on_peer_joined=self._on_transport_peer_joined,
                on_peer_left=self.engine.remove_peer,
            )

        self._discovery: DiscoveryManager | None = None
        if config.discovery.enabled:
            self._discovery = DiscoveryManager(
                peer_id=config.node.peer_id,
                namespace=config.node.namespace,
                port=config.http.port,
                service_type=config.discovery.service_type,
                # Nothing to announce without an HTTP API
                announce=config.discovery.announce and config.http.enabled,
                browse=config.discovery.browse,
                cache_ttl_seconds=config.discovery.cache_ttl_seconds,
                on_peer_joined=self._on_discovered_peer,
                on_peer_left=self._on_discovered_peer_left,
            )

        self._sync_client: StateSyncClient | None = None
        if config.http.bootstrap_on_discovery or not config.mqtt.enabled:
            self._sync_client = StateSyncClient(
                max_retries=config.http.max_retries,
                timeout=config.http.timeout,
            )

        self._unsubscribe_send = self.engine.on(EngineEvent.MESSAGE_SEND, self._publish)

    @property
    def running(self) -> bool:
        return self._running

    def _publish(self, message: PeerMessage) -> None:
        if self._transport:
            self._transport.send(message)
        elif self._sync_client:
            self._deliver_over_http(message)

    def _deliver_over_http(self, message: PeerMessage) -> None:
        if message.to is None:
            urls = list(self._peer_urls.values())
        elif message.to in self._peer_urls:
            urls = [self._peer_urls[message.to]]
        else:
            logger.debug(f"No HTTP address for {message.to}, dropping {message.type.value}")
            return
        if not urls:
            return

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Cannot deliver {message.type.value} over HTTP without a running loop")
            return
        for url in urls:
            self._spawn(self._sync_client.deliver(url, message))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_transport_peer_joined(self, peer_id: str) -> None:
        if self.engine.closed:
            return
        if self.engine.add_peer(peer_id):
            # Newcomers announce themselves; ask for their current state
            self.engine.request_state(peer_id)

    def _on_discovered_peer(self, peer_id: str, info: dict[str, Any]) -> None:
        if self.engine.closed:
            return
        url = info.get("url")
        if url:
            self._peer_urls[peer_id] = url
        self.engine.add_peer(peer_id)
        if self.config.http.bootstrap_on_discovery and url:
            self._spawn(self.bootstrap_from(url))

    def _on_discovered_peer_left(self, peer_id: str, info: dict[str, Any]) -> None:
        self._peer_urls.pop(peer_id, None)
        self.engine.remove_peer(peer_id)

    async def bootstrap_from(self, url: str) -> bool:
        """Pull a peer's state over HTTP and hand it to the engine.

        Returns:
            True if the state was fetched and accepted.
        """
        if not self._sync_client:
            return False

        message = await self._sync_client.fetch_state(url)
        if message is None or self.engine.closed:
            return False

        accepted = self.engine.handle_message(message)
        logger.info(f"Bootstrapped state from {message.sender} at {url}: accepted={accepted}")
        return accepted

    async def start(self) -> None:
        """Connect adapters and start the engine's sync timer."""
        logger.info(
            f"Starting peer {self.config.node.peer_id} "
            f"in namespace {self.config.node.namespace}"
        )

        if self._transport:
            connected = await self._transport.connect()
            if not connected:
                logger.error("Failed to connect to MQTT broker")
                raise RuntimeError("MQTT connection failed")

        if self._discovery:
            await self._discovery.start()

        self.engine.start()
        self._running = True
        logger.info("Node started successfully")

    async def run(self) -> None:
        """Start and block until stop() is called."""
        await self.start()
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop adapters and shut the engine down. Safe to call twice."""
        if not self._running and self.engine.closed:
            return
        logger.info("Stopping node...")
        self._running = False
        self._stop_event.set()

        for task in list(self._tasks):
            task.cancel()

        self._unsubscribe_send()
        await self.engine.aclose()

        if self._discovery:
            await self._discovery.stop()

        if self._transport:
            await self._transport.disconnect()

        logger.info("Node stopped")


async def run_node(config: Config) -> None:
    """Run a node until interrupted.

    Args:
        config: Node configuration.
    """
    node = MeshNode(config)

    try:
        await node.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await node.stop()

"""MQTT transport delivering peer messages over a broker.

Topic layout under ``{prefix}/{namespace}``:

- ``broadcast/{sender}``: messages for every peer
- ``peers/{target}/{sender}``: messages for one peer
- ``presence/{peer}``: retained ``online``, last-will ``offline``

The sender segment lets each peer drop its own traffic without decoding it.
"""

import asyncio
import logging
from typing import Any, Callable

import paho.mqtt.client as mqtt

from ..config import MQTTConfig
from ..messages import PeerMessage

logger = logging.getLogger(__name__)

PRESENCE_ONLINE = "online"
PRESENCE_OFFLINE = "offline"

RawMessageCallback = Callable[[str], None]
PeerCallback = Callable[[str], None]


class MQTTTransport:
    """Publishes engine messages and reports inbound traffic and presence.

    Paho runs its network loop in a background thread; every callback given
    to this class is invoked on the asyncio loop that called connect().
    """

    def __init__(
        self,
        config: MQTTConfig,
        peer_id: str,
        namespace: str = "default",
        on_message: RawMessageCallback | None = None,
        on_peer_joined: PeerCallback | None = None,
        on_peer_left: PeerCallback | None = None,
    ):
        self.config = config
        self.peer_id = peer_id
        self.namespace = namespace
        self.on_message = on_message
        self.on_peer_joined = on_peer_joined
        self.on_peer_left = on_peer_left

        self.base_topic = f"{config.topic_prefix}/{namespace}"

        # Paho MQTT client
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=f"peersync-{peer_id}"
        )
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect
        self._client.will_set(
            self.presence_topic(peer_id), PRESENCE_OFFLINE, qos=1, retain=True
        )

        # Connection state
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None

    # ==================== Topics ====================

    def broadcast_topic(self, sender: str) -> str:
        return f"{self.base_topic}/broadcast/{sender}"

    def unicast_topic(self, target: str, sender: str) -> str:
        return f"{self.base_topic}/peers/{target}/{sender}"

    def presence_topic(self, peer_id: str) -> str:
        return f"{self.base_topic}/presence/{peer_id}"

    @property
    def subscriptions(self) -> list[str]:
        return [
            f"{self.base_topic}/broadcast/+",
            f"{self.base_topic}/peers/{self.peer_id}/+",
            f"{self.base_topic}/presence/+",
        ]

    # ==================== Paho callbacks (network thread) ====================

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")

            for topic in self.subscriptions:
                client.subscribe(topic, qos=1)
                logger.debug(f"Subscribed to topic: {topic}")

            client.publish(
                self.presence_topic(self.peer_id), PRESENCE_ONLINE, qos=1, retain=True
            )
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming message."""
        try:
            payload = msg.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug(f"Dropping non-UTF-8 payload on {msg.topic}")
            return

        self._route(msg.topic, payload)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    # ==================== Routing ====================

    def _route(self, topic: str, payload: str) -> None:
        """Route a received topic/payload to the matching callback."""
        prefix = f"{self.base_topic}/"
        if not topic.startswith(prefix):
            return
        parts = topic[len(prefix):].split("/")

        if parts[0] == "presence" and len(parts) == 2:
            peer = parts[1]
            if peer == self.peer_id:
                return
            if payload == PRESENCE_ONLINE:
                self._dispatch(self.on_peer_joined, peer)
            elif payload == PRESENCE_OFFLINE:
                self._dispatch(self.on_peer_left, peer)
            return

        if parts[0] == "broadcast" and len(parts) == 2:
            sender = parts[1]
        elif parts[0] == "peers" and len(parts) == 3 and parts[1] == self.peer_id:
            sender = parts[2]
        else:
            logger.debug(f"Ignoring message on unexpected topic {topic}")
            return

        if sender == self.peer_id:
            return
        logger.debug(f"Received message on {topic}: {payload[:100]}")
        self._dispatch(self.on_message, payload)

    def _dispatch(self, callback: Callable[[str], None] | None, arg: str) -> None:
        if callback is None:
            return
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, arg)
        else:
            callback(arg)

    # ==================== Public API ====================

    async def connect(self) -> bool:
        """Connect to the MQTT broker.

        Returns:
            True if connection successful.
        """
        self._loop = asyncio.get_running_loop()

        # Set credentials if configured
        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(
                self.config.broker, self.config.port, keepalive=self.config.keepalive
            )
            self._client.loop_start()

            # Wait for connection
            for _ in range(50):  # 5 second timeout
                if self._connected:
                    return True
                await asyncio.sleep(0.1)

            logger.error("Timeout waiting for MQTT connection")
            return False

        except OSError as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    async def disconnect(self) -> None:
        """Announce departure and disconnect from the broker."""
        if self._connected:
            self._client.publish(
                self.presence_topic(self.peer_id), PRESENCE_OFFLINE, qos=1, retain=True
            )
        self._client.disconnect()
        self._client.loop_stop()
        self._connected = False

    def send(self, message: PeerMessage) -> bool:
        """Publish a peer message.

        Suitable as an engine MESSAGE_SEND listener.

        Returns:
            True if the publish was queued.
        """
        if not self._connected:
            logger.warning(f"Cannot send {message.type.value}: not connected to broker")
            return False

        if message.to is None:
            topic = self.broadcast_topic(self.peer_id)
        elif message.to == self.peer_id:
            return False
        else:
            topic = self.unicast_topic(message.to, self.peer_id)

        result = self._client.publish(topic, message.to_json(), qos=1)
        return result.rc == mqtt.MQTT_ERR_SUCCESS

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected

    async def check_connection(self) -> bool:
        """Check if broker is reachable."""
        if self._connected:
            return True

        # Try a quick connection test
        try:
            test_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            test_client.connect(self.config.broker, self.config.port, keepalive=5)
            test_client.disconnect()
            return True
        except OSError:
            return False

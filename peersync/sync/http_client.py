"""HTTP client for pulling state from and delivering messages to peers.

Handles network retries with exponential backoff. Retries belong here, in
the transport, never in the reconciliation engine.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..errors import MessageDecodeError
from ..messages import MessageType, PeerMessage

logger = logging.getLogger(__name__)

_SUPPORTED_METHODS = ("GET", "POST")


class StateSyncClient:
    """Client for a peer's HTTP state API.

    Supports:
    - Fetch: pull a peer's current state as a STATE_RESPONSE message
    - Deliver: post any peer message to a peer's inbox
    """

    def __init__(
        self,
        max_retries: int = 3,
        timeout: float = 10.0,
        initial_backoff: float = 1.0,
    ):
        """Initialize the client.

        Args:
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            initial_backoff: Seconds to wait before the first retry.
        """
        self.max_retries = max_retries
        self.timeout = timeout
        self.initial_backoff = initial_backoff
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Send a request, retrying server errors and network failures.

        4xx responses and other HTTP errors are returned immediately. The
        wait between attempts starts at ``initial_backoff`` and doubles.

        Returns:
            Tuple of (decoded JSON body, error message). Exactly one is None.
        """
        if method not in _SUPPORTED_METHODS:
            return None, f"Unsupported method: {method}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    response = await client.request(method, url, json=json_data)
                except (httpx.ConnectError, httpx.TimeoutException) as e:
                    logger.warning(
                        f"{method} {url} failed ({type(e).__name__}), "
                        f"attempt {attempt}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"{method} {url} failed: {e}")
                    return None, str(e)
                else:
                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None
                    if response.status_code < 500:
                        return None, f"HTTP {response.status_code}: {response.text}"
                    logger.warning(
                        f"{method} {url} returned {response.status_code}, "
                        f"attempt {attempt}/{self.max_retries}"
                    )

                if attempt < self.max_retries:
                    await asyncio.sleep(self.initial_backoff * 2 ** (attempt - 1))

        self._consecutive_failures += 1
        return None, f"Max retries ({self.max_retries}) exceeded"

    async def fetch_state(self, base_url: str) -> PeerMessage | None:
        """Fetch a peer's current state.

        Args:
            base_url: Base URL of the peer's API (e.g. "http://10.0.0.5:8470").

        Returns:
            The peer's STATE_RESPONSE message, or None on failure.
        """
        data, error = await self._request_with_retry(
            "GET", f"{base_url.rstrip('/')}/api/sync/state"
        )
        if error:
            logger.warning(f"State fetch from {base_url} failed: {error}")
            return None

        try:
            message = PeerMessage.from_dict(data)
        except MessageDecodeError as e:
            logger.warning(f"Invalid state response from {base_url}: {e}")
            return None

        if message.type is not MessageType.STATE_RESPONSE:
            logger.warning(f"Unexpected {message.type.value} from {base_url}")
            return None
        return message

    async def deliver(self, base_url: str, message: PeerMessage) -> bool:
        """Post a message to a peer's inbox.

        Returns:
            True if the peer accepted the message.
        """
        data, error = await self._request_with_retry(
            "POST", f"{base_url.rstrip('/')}/api/sync/messages", message.to_dict()
        )
        if error:
            logger.warning(f"Delivery to {base_url} failed: {error}")
            return False
        return bool(data.get("accepted", False))

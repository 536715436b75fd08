"""
Header Listener Utility for real-time block header notifications.

Provides a WebSocket subscription to ``chain_subscribeNewHeads`` on a
Substrate node. One call to ``listen`` is one subscription session;
reconnection policy belongs to the caller.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ChainConnectionError

HeaderCallback = Callable[[dict[str, Any]], Awaitable[None]]


class HeaderListener:
    """
    Utility for listening to new block headers via WebSocket.

    Features:
    - JSON-RPC subscription handshake with bounded wait
    - Notification filtering by subscription id
    - Clean unsubscribe on stop
    """

    SUBSCRIBE_METHOD = "chain_subscribeNewHeads"
    UNSUBSCRIBE_METHOD = "chain_unsubscribeNewHeads"

    def __init__(
        self,
        websocket_url: str,
        subscribe_timeout: float = 30.0,
        connect_fn: Callable[..., Any] = connect
    ) -> None:
        """
        Initialize the HeaderListener.

        Args:
            websocket_url: WebSocket RPC endpoint URL of the node
            subscribe_timeout: Seconds to wait for the connection and subscription id
            connect_fn: WebSocket connect function, replaced in tests
        """
        self.websocket_url = websocket_url
        self.subscribe_timeout = subscribe_timeout
        self._connect = connect_fn

        self.subscription_id: str | None = None
        self.header_callback: HeaderCallback | None = None
        self.headers_received = 0

        self._websocket: ClientConnection | None = None
        self._request_id = 0
        self._stopping = False

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _next_request(self, method: str, params: list[Any]) -> tuple[int, str]:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params
        }
        return self._request_id, json.dumps(payload)

    async def listen(
        self,
        callback: HeaderCallback,
        on_subscribed: Callable[[], None] | None = None
    ) -> None:
        """
        Run one subscription session until it is stopped or the transport drops.

        Args:
            callback: Async function called with each raw header dict
            on_subscribed: Called once the node confirmed the subscription

        Raises:
            ChainConnectionError: If the connection fails, the subscription is
                rejected, or the stream ends without ``stop()`` being called
        """
        self.header_callback = callback
        self._stopping = False
        self.logger.info(f"Connecting to header stream: {self.websocket_url}")

        try:
            async with self._connect(
                self.websocket_url,
                open_timeout=self.subscribe_timeout,
                max_size=None
            ) as websocket:
                self._websocket = websocket
                self.subscription_id = await asyncio.wait_for(
                    self._subscribe(websocket),
                    timeout=self.subscribe_timeout
                )
                self.logger.info(f"Subscribed to new heads (subscription {self.subscription_id})")

                if on_subscribed:
                    on_subscribed()

                async for message in websocket:
                    await self._handle_message(message)

        except ChainConnectionError:
            raise
        except ConnectionClosed as e:
            if not self._stopping:
                raise ChainConnectionError(f"Header stream closed: {e}") from e
        except (WebSocketException, OSError, ValueError) as e:
            if not self._stopping:
                raise ChainConnectionError(f"Header stream failed: {e}") from e
        finally:
            self._websocket = None
            self.subscription_id = None

        if not self._stopping:
            raise ChainConnectionError("Header stream closed by node")

    async def _subscribe(self, websocket: ClientConnection) -> str:
        """Send the subscribe request and wait for its subscription id."""
        request_id, request = self._next_request(self.SUBSCRIBE_METHOD, [])
        await websocket.send(request)

        while True:
            response = json.loads(await websocket.recv())
            if response.get("id") != request_id:
                continue
            if "error" in response:
                raise ChainConnectionError(f"Subscription rejected: {response['error']}")
            return str(response["result"])

    async def _handle_message(self, message: str | bytes) -> None:
        """
        Dispatch a notification from the node to the header callback.

        Args:
            message: Raw websocket frame
        """
        try:
            payload = json.loads(message)
        except json.JSONDecodeError as e:
            self.logger.warning(f"Ignoring non-JSON message: {e}")
            return

        match payload:
            case {"method": "chain_newHead", "params": {"subscription": subscription, "result": dict() as header}}:
                if str(subscription) != self.subscription_id:
                    self.logger.debug(f"Ignoring header for unknown subscription {subscription}")
                    return
            case {"id": _}:
                # Responses to our own requests (e.g. unsubscribe)
                return
            case _:
                self.logger.debug(f"Ignoring unexpected message: {payload}")
                return

        self.headers_received += 1
        try:
            if self.header_callback:
                await self.header_callback(header)
        except Exception as e:
            self.logger.error(f"Error processing header notification: {e}", exc_info=True)

    async def stop(self) -> None:
        """Unsubscribe and close the websocket."""
        self._stopping = True
        websocket = self._websocket
        if websocket is None:
            return

        self.logger.info("Stopping header listener...")
        try:
            if self.subscription_id:
                _, request = self._next_request(self.UNSUBSCRIBE_METHOD, [self.subscription_id])
                await websocket.send(request)
            await websocket.close()
        except (ConnectionClosed, WebSocketException, OSError) as e:
            self.logger.warning(f"Error during cleanup: {e}")


def parse_header_number(header: dict[str, Any]) -> int:
    """
    Parse the block number from a header notification.

    Nodes send the number as a hex string (``"0x1a2b"``); some proxies
    forward it already decoded as an integer.

    :param header: Raw header dict from ``chain_newHead``
    :return: Block number
    """
    number = header["number"]
    if isinstance(number, bool):
        raise ValueError(f"Invalid block number: {number!r}")
    if isinstance(number, int):
        return number
    if isinstance(number, str):
        return int(number, 16) if number.startswith("0x") else int(number)
    raise ValueError(f"Invalid block number: {number!r}")

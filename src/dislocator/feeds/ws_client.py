"""
WebSocket Feed Client
=====================

Async WebSocket client shared by the Coinbase and Polymarket feeds.
Handles connection, subscription, reconnection with backoff and message
forwarding. Integrates with Metrics for observability.

Every received message is parsed and pushed to the output queue as an
envelope:
    {"feed": name, "recv_ts_ms": int, "msg": parsed_json}

Normalization happens in the consumer task, not here.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import orjson
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from dislocator.utils_time import now_ms

if TYPE_CHECKING:
    from dislocator.metrics import Metrics

logger = logging.getLogger(__name__)

# Reconnection backoff sequence (seconds)
BACKOFF_SEQUENCE = [1, 2, 5, 10, 30]


def coinbase_subscription(product_ids: list[str]) -> dict:
    return {
        "type": "subscribe",
        "product_ids": product_ids,
        "channels": ["ticker", "heartbeat"],
    }


def polymarket_subscription(asset_ids: list[str]) -> dict:
    return {
        "auth": {},
        "type": "MARKET",
        "assets_ids": asset_ids,
    }


class FeedClient:
    """
    Reconnecting WebSocket client for one feed.

    Usage:
        queue = asyncio.Queue(maxsize=10000)
        client = FeedClient(
            name="coinbase",
            url="wss://ws-feed.exchange.coinbase.com",
            out_queue=queue,
            subscription=coinbase_subscription(["BTC-USD"]),
            metrics=metrics,
        )
        task = asyncio.create_task(client.run_forever())
        ...
        await client.stop()
    """

    def __init__(
        self,
        name: str,
        url: str,
        out_queue: asyncio.Queue,
        subscription: Optional[dict] = None,
        metrics: Optional["Metrics"] = None,
    ) -> None:
        """
        Args:
            name: Feed name used in envelopes, logs and metrics
            url: WebSocket URL
            out_queue: Queue receiving envelopes
            subscription: Message sent after every (re)connect; None waits
                until set_subscription() provides one
            metrics: Optional Metrics instance
        """
        self.name = name
        self.url = url
        self.out_queue = out_queue
        self._subscription = subscription
        self._metrics = metrics

        self._ws: Optional[Any] = None
        self._running = False
        self._backoff_index = 0
        self._resubscribe = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _get_backoff_delay(self) -> float:
        delay = BACKOFF_SEQUENCE[min(self._backoff_index, len(BACKOFF_SEQUENCE) - 1)]
        if self._backoff_index < len(BACKOFF_SEQUENCE) - 1:
            self._backoff_index += 1
        return delay

    def _mark_connected(self, connected: bool) -> None:
        if self._metrics:
            self._metrics.mark_connected(self.name, connected)

    async def set_subscription(self, subscription: dict) -> None:
        """
        Replace the subscription (e.g. new market assets).

        An open connection is closed so the next connect subscribes with
        the new message.
        """
        self._subscription = subscription
        self._resubscribe.set()
        if self._ws is not None:
            await self._ws.close()

    async def _connect(self) -> bool:
        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
                max_size=10 * 1024 * 1024,
            )
            if self._subscription is not None:
                await self._ws.send(orjson.dumps(self._subscription).decode("utf-8"))
        except (OSError, websockets.WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(
                "ws_connection_failed",
                extra={
                    "feed": self.name,
                    "url": self.url,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            self._ws = None
            return False

        logger.info("ws_connected", extra={"feed": self.name, "url": self.url})
        self._backoff_index = 0
        self._mark_connected(True)
        return True

    async def _receive_loop(self) -> None:
        while self._running and self._ws is not None:
            try:
                raw_message = await self._ws.recv()
            except ConnectionClosedOK:
                logger.info("ws_disconnected", extra={"feed": self.name, "reason": "connection_closed_ok"})
                break
            except ConnectionClosed as e:
                logger.warning(
                    "ws_disconnected",
                    extra={"feed": self.name, "reason": "connection_closed", "error": str(e)},
                )
                break

            recv_ts_ms = now_ms()
            try:
                parsed = orjson.loads(raw_message)
            except orjson.JSONDecodeError as e:
                if self._metrics:
                    self._metrics.inc_dropped(self.name)
                logger.warning(
                    "ws_invalid_json",
                    extra={
                        "feed": self.name,
                        "error": str(e),
                        "raw_preview": str(raw_message)[:200],
                    },
                )
                continue

            envelope = {"feed": self.name, "recv_ts_ms": recv_ts_ms, "msg": parsed}
            try:
                await asyncio.wait_for(self.out_queue.put(envelope), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning(
                    "ws_queue_backpressure",
                    extra={"feed": self.name, "queue_size": self.out_queue.qsize()},
                )
                await self.out_queue.put(envelope)

        self._mark_connected(False)

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.WebSocketException) as e:
                logger.debug("ws_close_error", extra={"feed": self.name, "error": str(e)})

    async def run_forever(self) -> None:
        """
        Connect and reconnect until stop() is called or the task is cancelled.
        """
        self._running = True
        logger.info("ws_client_starting", extra={"feed": self.name, "url": self.url})

        while self._running:
            if await self._connect():
                await self._receive_loop()
                await self._close()

            if not self._running:
                break

            if self._resubscribe.is_set():
                self._resubscribe.clear()
                logger.info("ws_resubscribing", extra={"feed": self.name})
                continue

            if self._metrics:
                self._metrics.inc_reconnect(self.name)
            delay = self._get_backoff_delay()
            logger.info("ws_reconnecting", extra={"feed": self.name, "delay_seconds": delay})
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break

        logger.info("ws_client_stopped", extra={"feed": self.name})

    async def stop(self) -> None:
        """Stop the client and close the connection."""
        self._running = False
        self._mark_connected(False)
        await self._close()

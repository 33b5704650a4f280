import asyncio
import json
import logging
from typing import Callable, Optional

import websockets

from quotebridge.common.errors import ConnectError, TransportError

log = logging.getLogger("quotebridge.feed")

ItemCallback = Callable[[str, str], None]


class WebSocketQuoteFeed:
    """
    Advisory quote feed over a websocket.

    After `connect(channel, topic)` the server pushes
    {"item": "<symbol>", "data": "<date> <time> <bid> <ask>"} for every item
    started with `start_subscription`. Heartbeats and status messages are
    skipped. `on_item` runs on the loop and must not block.
    """

    def __init__(self, url: str, on_item: ItemCallback,
                 on_disconnect: Optional[Callable[[], None]] = None, open_timeout: float = 10.0):
        self.url = url
        self.on_item = on_item
        self.on_disconnect = on_disconnect
        self.open_timeout = open_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self, channel: str, topic: str):
        try:
            self._ws = await websockets.connect(
                self.url, ping_interval=20, ping_timeout=20, open_timeout=self.open_timeout)
            await self._ws.send(json.dumps({"event": "connect", "channel": channel, "topic": topic}))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ConnectError(f"Cannot connect feed {self.url} ({channel}/{topic}): {e}") from e
        log.info("Connected to %s %s/%s", self.url, channel, topic)
        self._reader = asyncio.create_task(self._read_loop())

    async def start_subscription(self, source_key: str):
        if self._ws is None:
            raise TransportError(f"Feed not connected, cannot subscribe {source_key}")
        try:
            await self._ws.send(json.dumps({"event": "advise", "item": source_key}))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Subscribe {source_key} failed: {e}") from e

    def dispatch(self, raw):
        try:
            data = json.loads(raw)
        except ValueError:
            return
        # heartbeat / status / ack
        if not isinstance(data, dict):
            return
        item = data.get("item")
        payload = data.get("data")
        if not isinstance(item, str) or not isinstance(payload, str):
            return
        self.on_item(item, payload)

    async def _read_loop(self):
        try:
            async for msg in self._ws:
                self.dispatch(msg)
        except websockets.exceptions.ConnectionClosed as e:
            log.warning("Feed connection closed: %s", e)
        finally:
            log.info("Disconnected")
            if not self._closing and self.on_disconnect is not None:
                self.on_disconnect()

    async def disconnect(self):
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

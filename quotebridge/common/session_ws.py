import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from quotebridge.common.errors import ConnectError, TransportError
from quotebridge.common.transport import ResultCallback, SessionEventCallback, Transport

log = logging.getLogger("quotebridge.session")


class WebSocketSessionClient(Transport):
    """
    JSON-over-websocket session with the endpoint.

    Requests carry a `requestId`; the reply with the same id is handed to the
    request's continuation. Messages without an id are session events.
    """

    def __init__(self, host: str, vpn: str, on_event: Optional[SessionEventCallback] = None,
                 secure: bool = False, open_timeout: float = 10.0):
        super().__init__(on_event)
        scheme = "wss" if secure else "ws"
        self.url = f"{scheme}://{host}/{vpn}"
        self.open_timeout = open_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._seq = 0
        self._pending: Dict[int, ResultCallback] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    async def connect(self):
        try:
            self._ws = await websockets.connect(
                self.url, ping_interval=20, ping_timeout=20, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ConnectError(f"Cannot reach endpoint {self.url}: {e}") from e
        log.info("Connected to endpoint %s", self.url)
        self._reader = asyncio.create_task(self._read_loop())

    async def _send_json(self, operation: str, message: Dict[str, Any]):
        if self._ws is None:
            raise TransportError(f"{operation}: session not connected")
        try:
            await self._ws.send(json.dumps(message))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"{operation} failed: {e}") from e

    async def _request(self, operation: str, on_result: Optional[ResultCallback], **body):
        self._seq += 1
        request_id = self._seq
        if on_result is not None:
            self._pending[request_id] = on_result
        try:
            await self._send_json(operation, {"requestId": request_id, "op": operation, **body})
        except TransportError:
            self._pending.pop(request_id, None)
            raise

    async def login(self, user: str, password: str, on_result: ResultCallback):
        await self._request("login", on_result, user=user, password=password)

    async def logout(self):
        await self._request("logout", None)

    async def request_publish_permission(self, dataset_id: str, on_result: ResultCallback):
        await self._request("publishRequest", on_result, dataset=dataset_id)

    async def send(self, dataset_id: str, document: str):
        # document is pre-rendered JSON so decimal text survives verbatim
        await self._send_json("publish", {"op": "publish", "dataset": dataset_id, "data": document})

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Response callback failed", exc_info=task.exception())

    def dispatch(self, raw: str):
        try:
            data = json.loads(raw)
        except ValueError:
            log.warning("Ignoring non-JSON message from endpoint: %r", raw[:200])
            return
        if not isinstance(data, dict):
            log.warning("Ignoring unexpected message from endpoint: %r", raw[:200])
            return
        request_id = data.get("requestId")
        if request_id is None:
            self.emit_event(data)
            return
        callback = self._pending.pop(request_id, None)
        if callback is None:
            log.debug("No pending request for reply %s", request_id)
            return
        self._spawn(callback(raw))

    async def _read_loop(self):
        try:
            async for msg in self._ws:
                if isinstance(msg, bytes):
                    msg = msg.decode("utf-8", "replace")
                self.dispatch(msg)
        except websockets.exceptions.ConnectionClosed as e:
            log.warning("Endpoint connection closed: %s", e)
        finally:
            if not self._closing:
                self.emit_event({"event": "SESSION_CLOSED", "url": self.url})

    async def close(self):
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                log.warning("Error closing endpoint session: %s", e)
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._pending.clear()

import json
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import AuthenticationError, RedisError

from quotebridge.common.errors import ConnectError, TransportError
from quotebridge.common.transport import ResultCallback, SessionEventCallback, Transport

log = logging.getLogger("quotebridge.redis")

DEFAULT_REDIS_URL = "redis://redis:6379/0"
DEFAULT_STREAM_PREFIX = "quotes:"


def _status(ok: bool, message: str = "") -> str:
    body = {"status": "SUCCESS" if ok else "FAILURE"}
    if message:
        body["message"] = message
    return json.dumps(body)


class RedisStreamTransport(Transport):
    """
    Publishes each dataset to its own Redis stream (XADD).

    login is an authenticated PING; publish permission is granted when the
    dataset's stream key is free or already holds a stream.
    """

    def __init__(self, url: str = DEFAULT_REDIS_URL, stream_prefix: str = DEFAULT_STREAM_PREFIX,
                 on_event: Optional[SessionEventCallback] = None, client=None):
        super().__init__(on_event)
        self.url = url
        self.stream_prefix = stream_prefix
        self._client = client
        self._user: Optional[str] = None

    def stream_key(self, dataset_id: str) -> str:
        return f"{self.stream_prefix}{dataset_id}"

    async def connect(self):
        # the actual socket is opened lazily by login's PING
        if self._client is None:
            try:
                self._client = redis.from_url(self.url, decode_responses=True)
            except ValueError as e:
                raise ConnectError(f"Invalid redis url {self.url}: {e}") from e
        log.info("Redis transport ready for %s", self.url)

    async def login(self, user: str, password: str, on_result: ResultCallback):
        try:
            if password:
                await self._client.execute_command("AUTH", user, password)
            await self._client.ping()
        except AuthenticationError as e:
            await on_result(_status(False, str(e)))
            return
        except (RedisError, OSError) as e:
            raise TransportError(f"login failed: {e}") from e
        self._user = user
        await on_result(_status(True))

    async def logout(self):
        self._user = None

    async def request_publish_permission(self, dataset_id: str, on_result: ResultCallback):
        key = self.stream_key(dataset_id)
        try:
            kind = await self._client.type(key)
        except (RedisError, OSError) as e:
            raise TransportError(f"publish request for {dataset_id} failed: {e}") from e
        if kind in ("stream", "none"):
            await on_result(_status(True))
        else:
            await on_result(_status(False, f"{key} holds a {kind}"))

    async def send(self, dataset_id: str, document: str):
        try:
            await self._client.xadd(self.stream_key(dataset_id), {"data": document})
        except (RedisError, OSError) as e:
            raise TransportError(f"send to {dataset_id} failed: {e}") from e

    async def close(self):
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                log.warning("Error closing redis client: %s", e)

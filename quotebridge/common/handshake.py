import asyncio
import functools
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Set

from quotebridge.common.errors import TransportError
from quotebridge.common.metrics import (
    DATASETS_PUBLISHING,
    DOCUMENTS_PUBLISHED,
    RECORDS_DROPPED,
    TRANSPORT_ERRORS,
)
from quotebridge.common.models import QuoteDocument
from quotebridge.common.symbol_map import SubscriptionRegistry
from quotebridge.common.transport import Transport

log = logging.getLogger("quotebridge.handshake")


class HandshakeState(str, Enum):
    DISCONNECTED = "Disconnected"
    FEED_CONNECTED = "FeedConnected"
    LOGGED_IN = "LoggedIn"
    PUBLISHING = "Publishing"
    DISPOSED = "Disposed"


def is_success(body: str) -> bool:
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return False
    return isinstance(data, dict) and data.get("status") == "SUCCESS"


class HandshakeController:
    """
    login -> publish permission per dataset -> publishing -> disposed.

    Datasets are granted independently; `publish` refuses any dataset whose
    own grant has not arrived. Subclasses hook `connect_feed`,
    `on_dataset_ready` and `disconnect_feed`.
    """

    def __init__(self, transport: Transport, registry: SubscriptionRegistry,
                 user: str, password: str, stop: Optional[asyncio.Event] = None):
        self.transport = transport
        self.registry = registry
        self.user = user
        self.password = password
        self.stop = stop if stop is not None else asyncio.Event()
        self.state = HandshakeState.DISCONNECTED
        self._granted: Set[str] = set()
        self._dispose_task: Optional[asyncio.Future] = None
        if transport.on_event is None:
            transport.on_event = self.on_session_event

    @property
    def disposed(self) -> bool:
        return self._dispose_task is not None

    # ----------------------------
    # Startup
    # ----------------------------
    async def connect_feed(self):
        pass

    async def start(self):
        self.registry.freeze()
        await self.connect_feed()
        await self.transport.connect()
        log.info("Logging in %s", self.user)
        try:
            await self.transport.login(self.user, self.password, self._on_login)
        except TransportError as e:
            TRANSPORT_ERRORS.labels(operation="login").inc()
            log.error("Login request failed, handshake stalled: %s", e)

    async def _on_login(self, body: str):
        log.info("Receive login response %s", body)
        if self.disposed:
            return
        if not is_success(body):
            TRANSPORT_ERRORS.labels(operation="login").inc()
            log.error("Login rejected, no publish requests will be sent: %s", body)
            return
        self.state = HandshakeState.LOGGED_IN
        for dataset in self.registry.datasets():
            await self._request_permission(dataset)

    async def _request_permission(self, dataset: str):
        log.info("Request publish to %s", dataset)
        try:
            await self.transport.request_publish_permission(
                dataset, functools.partial(self._on_permission, dataset))
        except TransportError as e:
            TRANSPORT_ERRORS.labels(operation="publish_request").inc()
            log.error("Publish request for %s failed, dataset stays unpublished: %s", dataset, e)

    async def _on_permission(self, dataset: str, body: str):
        log.info("Receive publish response for %s: %s", dataset, body)
        if self.disposed:
            return
        if not is_success(body):
            TRANSPORT_ERRORS.labels(operation="publish_request").inc()
            log.warning("Publish permission denied for %s: %s", dataset, body)
            return
        if dataset in self._granted:
            return
        self._granted.add(dataset)
        self.state = HandshakeState.PUBLISHING
        DATASETS_PUBLISHING.set(len(self._granted))
        log.info("Publishing granted for %s (%d/%d datasets)",
                 dataset, len(self._granted), len(self.registry.datasets()))
        await self.on_dataset_ready(dataset)

    async def on_dataset_ready(self, dataset: str):
        pass

    def on_session_event(self, event: Dict[str, Any]):
        log.info("SessionEvent: %s", event)

    # ----------------------------
    # Publishing
    # ----------------------------
    def is_publishing(self, dataset: str) -> bool:
        return dataset in self._granted

    def all_publishing(self) -> bool:
        return all(ds in self._granted for ds in self.registry.datasets())

    async def publish(self, document: QuoteDocument) -> bool:
        if self.disposed or document.dataset not in self._granted:
            RECORDS_DROPPED.labels(reason="not_permitted").inc()
            log.warning("Dropping document for %s: no publish permission", document.dataset)
            return False
        payload = document.to_json()
        await self.transport.send(document.dataset, payload)
        DOCUMENTS_PUBLISHED.labels(dataset=document.dataset).inc()
        log.debug("POST DATA %s %s", document.dataset, payload)
        return True

    # ----------------------------
    # Shutdown
    # ----------------------------
    async def disconnect_feed(self):
        pass

    async def dispose(self):
        if self._dispose_task is None:
            self._dispose_task = asyncio.ensure_future(self._dispose())
        await asyncio.shield(self._dispose_task)

    async def _dispose(self):
        self.stop.set()
        log.info("Disconnecting...")
        try:
            await self.transport.logout()
        except TransportError as e:
            TRANSPORT_ERRORS.labels(operation="logout").inc()
            log.warning("Logout failed: %s", e)
        await self.disconnect_feed()
        await self.transport.close()
        self.state = HandshakeState.DISPOSED
        log.info("Exit")

    async def run_until_disposed(self, poll_interval: float = 10.0):
        while self.state is not HandshakeState.DISPOSED:
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                log.debug("Still running: state=%s granted=%d", self.state.value, len(self._granted))
                continue
            await self.dispose()

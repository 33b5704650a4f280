import json
from typing import Dict, List, Optional, Set, Tuple

import pytest

from quotebridge.common.config import CsvSettings, LiveSettings
from quotebridge.common.errors import ConnectError
from quotebridge.common.symbol_map import SubscriptionRegistry
from quotebridge.common.transport import ResultCallback, Transport


class FakeTransport(Transport):
    """Endpoint double; records every send made before that dataset's grant."""

    def __init__(self, fail_connect: bool = False):
        super().__init__()
        self.fail_connect = fail_connect
        self.connected = False
        self.login_calls: List[Tuple[str, str]] = []
        self.login_cb: Optional[ResultCallback] = None
        self.permission_cbs: Dict[str, ResultCallback] = {}
        self.permission_requests: List[str] = []
        self.granted: Set[str] = set()
        self.sent: List[Tuple[str, str]] = []
        self.premature: List[Tuple[str, str]] = []
        self.logouts = 0
        self.closed = 0

    async def connect(self):
        if self.fail_connect:
            raise ConnectError("endpoint down")
        self.connected = True

    async def login(self, user, password, on_result):
        self.login_calls.append((user, password))
        self.login_cb = on_result

    async def logout(self):
        self.logouts += 1

    async def request_publish_permission(self, dataset_id, on_result):
        self.permission_requests.append(dataset_id)
        self.permission_cbs[dataset_id] = on_result

    async def send(self, dataset_id, document):
        if dataset_id not in self.granted:
            self.premature.append((dataset_id, document))
        self.sent.append((dataset_id, document))

    async def close(self):
        self.closed += 1

    # test drivers
    async def reply_login(self, status: str = "SUCCESS"):
        await self.login_cb(json.dumps({"status": status}))

    async def grant(self, dataset_id: str, status: str = "SUCCESS"):
        if status == "SUCCESS":
            self.granted.add(dataset_id)
        await self.permission_cbs[dataset_id](json.dumps({"status": status}))

    def sent_documents(self) -> List[dict]:
        return [json.loads(doc) for _, doc in self.sent]


class FakeFeed:
    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.on_item = None
        self.on_disconnect = None
        self.connected_to: Optional[Tuple[str, str]] = None
        self.subscribed: List[str] = []
        self.disconnects = 0

    async def connect(self, channel, topic):
        if self.fail_connect:
            raise ConnectError("feed down")
        self.connected_to = (channel, topic)

    async def start_subscription(self, source_key):
        self.subscribed.append(source_key)

    async def disconnect(self):
        self.disconnects += 1

    def push(self, source_key: str, payload: str):
        self.on_item(source_key, payload)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_feed():
    return FakeFeed()


@pytest.fixture
def registry():
    reg = SubscriptionRegistry()
    reg.register("EURUSD", "DS1")
    reg.register("EURUSD.m", "DS1")
    reg.register("GBPUSD", "DS2")
    return reg


@pytest.fixture
def live_settings():
    def make(**overrides) -> LiveSettings:
        values = dict(
            host="localhost:9000", vpn="vpn1", user="alice", password="secret",
            type_id="fx-quote", subscription_mapping="EURUSD,DS1,EURUSD.m,DS1,GBPUSD,DS2",
            standard_offset_seconds=7200, dst_offset_seconds=10800,
            queue_poll_seconds=0.05, await_poll_seconds=0.05,
        )
        values.update(overrides)
        return LiveSettings(**values)
    return make


@pytest.fixture
def csv_settings(tmp_path):
    def make(rows: str, **overrides) -> CsvSettings:
        data_file = tmp_path / "quotes.csv"
        data_file.write_text(rows, encoding="utf-8")
        values = dict(
            host="localhost:9000", vpn="vpn1", user="alice", password="secret",
            type_id="fx-quote", subscription_mapping="EURUSD,DS1,GBPUSD,DS2",
            data_file=str(data_file), dataset_column=0, timestamp_column=1,
            timestamp_format="%Y-%m-%dT%H:%M:%S", source_timezone="America/New_York",
            field_mapping="bid,2,ask,3", await_poll_seconds=0.05,
        )
        values.update(overrides)
        return CsvSettings(**values)
    return make

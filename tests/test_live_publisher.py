import asyncio
from datetime import datetime, timezone

import pytest

from quotebridge.common.errors import ConnectError
from quotebridge.common.handshake import HandshakeState
from quotebridge.common.normalize import LiveQuoteNormalizer
from quotebridge.live_publisher.controller import LivePublisher

from conftest import FakeFeed, FakeTransport

WINTER = datetime(2024, 1, 15, 12, tzinfo=timezone.utc)
TICK = "2024/01/01 12:00:00 1.1000 1.1002"


def _publisher(transport, registry, settings, feed, clock_ms=lambda: 1_000):
    normalizer = LiveQuoteNormalizer(settings.type_id, dst_offset_seconds=settings.dst_offset_seconds,
                                     std_offset_seconds=settings.standard_offset_seconds,
                                     clock=lambda: WINTER)
    return LivePublisher(transport, registry, settings, feed=feed, normalizer=normalizer,
                         clock_ms=clock_ms)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


async def _shutdown(pub):
    await pub.dispose()
    await pub.join_worker(1.0)


@pytest.mark.asyncio
async def test_no_permission_requests_before_login(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()

    assert fake_feed.connected_to == ("MT4", "QUOTE")
    assert pub.state is HandshakeState.FEED_CONNECTED
    assert fake_transport.login_calls == [("alice", "secret")]
    assert fake_transport.permission_requests == []

    await fake_transport.reply_login("SUCCESS")
    assert pub.state is HandshakeState.LOGGED_IN
    assert fake_transport.permission_requests == ["DS1", "DS2"]
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_rejected_login_stalls_handshake(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login("FAILURE")

    assert pub.state is HandshakeState.FEED_CONNECTED
    assert fake_transport.permission_requests == []
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_datasets_start_subscriptions_independently(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()

    await fake_transport.grant("DS1")
    assert pub.state is HandshakeState.PUBLISHING
    assert pub.is_publishing("DS1") and not pub.is_publishing("DS2")
    assert fake_feed.subscribed == ["EURUSD", "EURUSD.m"]

    await fake_transport.grant("DS2", status="FAILURE")
    assert not pub.is_publishing("DS2")
    assert "GBPUSD" not in fake_feed.subscribed
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_end_to_end_tick_is_published(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()
    await fake_transport.grant("DS1")

    fake_feed.push("EURUSD", TICK)
    await _wait_for(lambda: len(fake_transport.sent) == 1)

    doc = fake_transport.sent_documents()[0]
    assert fake_transport.sent[0][0] == "DS1"
    assert doc["dataset"] == "DS1"
    assert doc["typeId"] == "fx-quote"
    assert doc["timestamp"] == 1_704_110_400_000 - 7_200_000
    assert doc["quoteTime"] == doc["timestamp"]
    assert '"bidPrice": 1.1000' in fake_transport.sent[0][1]
    assert '"spread": 0.0002' in fake_transport.sent[0][1]
    assert fake_transport.premature == []
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_same_second_ticks_get_increasing_millis(fake_transport, fake_feed, registry, live_settings):
    arrivals = iter([50_000, 50_005])
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed, clock_ms=lambda: next(arrivals))
    await pub.start()
    await fake_transport.reply_login()
    await fake_transport.grant("DS1")

    fake_feed.push("EURUSD", TICK)
    fake_feed.push("EURUSD.m", "2024/01/01 12:00:00 1.1001 1.1003")
    await _wait_for(lambda: len(fake_transport.sent) == 2)

    first, second = fake_transport.sent_documents()
    assert second["timestamp"] - first["timestamp"] >= 1
    assert second["timestamp"] - first["timestamp"] < 1000
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_ungranted_and_unmapped_ticks_are_never_sent(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()
    await fake_transport.grant("DS1")

    fake_feed.push("GBPUSD", TICK)   # DS2 not granted yet
    fake_feed.push("USDJPY", TICK)   # not mapped at all
    fake_feed.push("EURUSD", TICK)
    await _wait_for(lambda: len(fake_transport.sent) == 1)
    await asyncio.sleep(0.05)

    assert [ds for ds, _ in fake_transport.sent] == ["DS1"]
    assert fake_transport.premature == []
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_bad_tick_does_not_stall_pipeline(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()
    await fake_transport.grant("DS1")

    fake_feed.push("EURUSD", "garbage")
    fake_feed.push("EURUSD", "2024/01/01 12:00:00 oops 1.1")
    fake_feed.push("EURUSD", TICK)
    await _wait_for(lambda: len(fake_transport.sent) == 1)
    assert pub.worker.published == 1
    await _shutdown(pub)


@pytest.mark.asyncio
async def test_feed_disconnect_disposes(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()

    fake_feed.on_disconnect()
    await asyncio.wait_for(pub.run_until_disposed(0.05), timeout=2.0)

    assert pub.state is HandshakeState.DISPOSED
    assert fake_transport.logouts == 1
    assert fake_feed.disconnects == 1
    await pub.join_worker(1.0)
    assert pub._worker_task.done()


@pytest.mark.asyncio
async def test_dispose_is_idempotent(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await pub.dispose()
    await pub.dispose()

    assert pub.state is HandshakeState.DISPOSED
    assert fake_transport.logouts == 1
    assert fake_transport.closed == 1
    assert fake_feed.disconnects == 1
    await pub.join_worker(1.0)


@pytest.mark.asyncio
async def test_grants_after_dispose_are_ignored(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()
    await fake_transport.reply_login()
    await pub.dispose()

    await fake_transport.grant("DS1")
    assert fake_feed.subscribed == []
    assert pub.state is HandshakeState.DISPOSED
    await pub.join_worker(1.0)


@pytest.mark.asyncio
async def test_stop_signal_ends_supervising_wait(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(), fake_feed)
    await pub.start()

    asyncio.get_running_loop().call_later(0.02, pub.stop.set)
    await asyncio.wait_for(pub.run_until_disposed(0.05), timeout=2.0)
    assert pub.state is HandshakeState.DISPOSED
    await pub.join_worker(1.0)


@pytest.mark.asyncio
async def test_feed_disabled_skips_feed_entirely(fake_transport, fake_feed, registry, live_settings):
    pub = _publisher(fake_transport, registry, live_settings(feed_enabled=False), fake_feed)
    await pub.start()
    assert pub.state is HandshakeState.DISCONNECTED
    assert fake_feed.connected_to is None

    await fake_transport.reply_login()
    assert pub.state is HandshakeState.LOGGED_IN
    await fake_transport.grant("DS1")
    assert fake_feed.subscribed == []

    await pub.dispose()
    assert fake_feed.disconnects == 0
    await pub.join_worker(1.0)


@pytest.mark.asyncio
async def test_unknown_dst_region_is_rejected_before_start(fake_transport, fake_feed, registry, live_settings):
    with pytest.raises(RuntimeError, match="Mars/Olympus_Mons"):
        LivePublisher(fake_transport, registry, live_settings(dst_region_tz="Mars/Olympus_Mons"),
                      feed=fake_feed)
    assert fake_transport.login_calls == []


@pytest.mark.asyncio
async def test_feed_connect_failure_is_fatal(registry, live_settings):
    transport = FakeTransport()
    pub = _publisher(transport, registry, live_settings(), FakeFeed(fail_connect=True))
    with pytest.raises(ConnectError):
        await pub.start()
    assert transport.login_calls == []
    await pub.dispose()
    assert pub.state is HandshakeState.DISPOSED

import asyncio
import logging
import sys
from typing import Optional

from quotebridge.common.config import LiveSettings, load_live_settings
from quotebridge.common.endpoint import make_transport
from quotebridge.common.errors import ConnectError
from quotebridge.common.metrics import start_metrics_server
from quotebridge.common.runtime import install_signal_handlers, setup_logging
from quotebridge.common.symbol_map import load_registry
from quotebridge.live_publisher.controller import LivePublisher

log = logging.getLogger("quotebridge.live")


async def main(settings: Optional[LiveSettings] = None) -> int:
    settings = settings or load_live_settings()
    registry = load_registry(settings.subscription_mapping)
    log.info("Starting live publisher: feed=%s enabled=%s transport=%s symbols=%s",
             settings.feed_url, settings.feed_enabled, settings.transport,
             [s.source_key for s in registry.subscriptions()])

    start_metrics_server(settings.metrics_port)

    stop = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), stop)

    publisher = LivePublisher(make_transport(settings), registry, settings, stop=stop)
    try:
        await publisher.start()
    except ConnectError as e:
        log.error("Startup failed: %s", e)
        await publisher.dispose()
        return 1

    await publisher.run_until_disposed(settings.await_poll_seconds)
    await publisher.join_worker(settings.queue_poll_seconds + 1.0)
    log.info("Live publisher stopped.")
    return 0


def run():
    setup_logging()
    try:
        settings = load_live_settings()
        code = asyncio.run(main(settings))
    except (RuntimeError, ValueError) as e:
        log.error("Invalid configuration: %s", e)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    run()

import asyncio
import logging
import sys
from typing import Optional

from quotebridge.common.config import CsvSettings, load_csv_settings
from quotebridge.common.endpoint import make_transport
from quotebridge.common.errors import ConnectError
from quotebridge.common.metrics import start_metrics_server
from quotebridge.common.runtime import install_signal_handlers, setup_logging
from quotebridge.common.symbol_map import load_registry
from quotebridge.csv_publisher.publisher import CsvPublisher

log = logging.getLogger("quotebridge.csv")


async def main(settings: Optional[CsvSettings] = None) -> int:
    settings = settings or load_csv_settings()
    registry = load_registry(settings.subscription_mapping, settings.field_mapping)
    if not registry.datasets():
        log.error("SUBSCRIPTION_MAPPING has no entries, nothing to publish")
        return 1
    log.info("Starting CSV publisher: file=%s datasets=%d fields=%s",
             settings.data_file, len(registry.datasets()),
             [f.field_name for f in registry.field_mappings()])

    start_metrics_server(settings.metrics_port)

    stop = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), stop)

    publisher = CsvPublisher(make_transport(settings), registry, settings, stop=stop)
    try:
        await publisher.start()
    except ConnectError as e:
        log.error("Startup failed: %s", e)
        await publisher.dispose()
        return 1

    await publisher.run_until_disposed(settings.await_poll_seconds)
    return 1 if publisher.failed else 0


def run():
    setup_logging()
    try:
        settings = load_csv_settings()
        code = asyncio.run(main(settings))
    except (RuntimeError, ValueError) as e:
        log.error("Invalid configuration: %s", e)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    run()

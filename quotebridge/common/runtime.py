import asyncio
import logging
import os
import signal

log = logging.getLogger("quotebridge")


def setup_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def install_signal_handlers(loop: asyncio.AbstractEventLoop, stop: asyncio.Event):
    # Graceful stop: the supervising wait sees `stop` within its poll interval
    def handle_stop(sig, frame):
        log.warning("Received stop signal, shutting down...")
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)

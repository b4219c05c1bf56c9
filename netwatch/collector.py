"""
Standalone collector process.

Runs the probing engine (device loop, traffic loop, pool sweeper) without
the HTTP API, for deployments where the API lives in another process.

Run it as:

    python -m netwatch.collector

Stop with Ctrl+C or SIGTERM; in-flight probes are cancelled and pooled
router sessions are closed before exit.
"""

import asyncio
import logging
import signal

from netwatch.config import settings
from netwatch.database import create_all
from netwatch.engine import ProbingEngine
from netwatch.logging_config import configure_logging
from netwatch.storage import Storage

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass


async def run() -> None:
    """Create tables, start the engine and run until signalled."""
    await create_all()

    engine = ProbingEngine(Storage())
    settings_now = await engine.refresh_settings()
    logger.info("[collector] Polling every %ss, %s concurrent probes, pool %s",
                settings_now.polling_interval, settings_now.concurrent_probes,
                "enabled" if settings_now.pool_enabled else "disabled")

    stop = asyncio.Event()
    _install_signal_handlers(stop)

    engine.start()
    try:
        await stop.wait()
    finally:
        logger.info("[collector] Shutting down...")
        await engine.stop()


def main() -> None:
    configure_logging(settings.log_level)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

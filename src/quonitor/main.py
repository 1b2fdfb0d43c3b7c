"""Main entry point for Quonitor."""

import asyncio
import signal

from quonitor.config import get_settings
from quonitor.logging import get_logger, setup_logging
from quonitor.service import QuotaMonitor


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("quonitor.main")

    settings = get_settings()
    log.info(
        "starting_quonitor",
        environment=settings.environment,
        max_concurrent_fetches=settings.max_concurrent_fetches,
    )

    monitor = QuotaMonitor.create(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        await monitor.start()
        await stop.wait()
        log.info("shutdown_requested")
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        await monitor.close()
        log.info("quonitor_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

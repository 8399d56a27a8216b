"""Run the position indexer: `python -m position_indexer`."""

from __future__ import annotations

import asyncio
import logging
import signal

from position_indexer.config import get_settings
from position_indexer.pipeline import Pipeline

logger = logging.getLogger(__name__)


async def main() -> None:
    """Main entry point for the indexer service."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    pipeline = Pipeline(settings)
    await pipeline.start()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    try:
        await stop_requested.wait()
        logger.info("Shutdown signal received")
    finally:
        await pipeline.stop()


if __name__ == "__main__":
    asyncio.run(main())

# src/risk_ingest/worker.py
"""
Standalone queue worker.

    python -m risk_ingest.worker

Runs WORKER_CONCURRENCY job loops plus the stall reaper against the same
queue, store and cache the API process uses. Needs a shared queue backend
(redis) and a shared store (postgres) to be useful.
"""
import asyncio
import signal
import sys

from .config import get_settings
from .logger import get_logger, setup_logging
from .services import build_services

logger = get_logger(__name__)


async def run() -> int:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    services = await build_services(settings)
    if not services.queue.is_available:
        logger.error("queue backend unavailable, nothing to consume")
        await services.close()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    tasks = services.orchestrator.start_workers(stop, max(1, settings.worker_concurrency))
    try:
        await stop.wait()
    finally:
        logger.info("shutdown requested, stopping workers")
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await services.close()
    return 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()

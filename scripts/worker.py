#!/usr/bin/env python3
"""Worker that drains queued generation jobs from the store.

Usage:
  REDIS_URL=redis://localhost:6379/0 OPENAI_API_KEY=... python scripts/worker.py

SIGINT/SIGTERM stop the loop after the current batch finishes; the Redis
connection is closed on the way out. Set TESTING=1 to run against the
in-memory Redis used by the tests.
"""
import asyncio
import logging
import signal
from typing import Optional

from promptlab.config import Settings, configure_logging, get_settings
from promptlab.providers.registry import ProviderRegistry
from promptlab.scheduler import JobScheduler
from promptlab.services import Services, build_scheduler, build_services

logger = logging.getLogger("promptlab.worker")


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(scheduler: JobScheduler) -> bool:
    loop = asyncio.get_running_loop()
    try:
        for sig in STOP_SIGNALS:
            loop.add_signal_handler(sig, scheduler.stop)
    except (NotImplementedError, RuntimeError, ValueError):
        # not supported off the main thread or on this platform
        return False
    return True


def remove_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in STOP_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            pass


async def run_worker(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    providers: Optional[ProviderRegistry] = None,
    scheduler: Optional[JobScheduler] = None,
):
    settings = settings or get_settings()
    owns_services = services is None
    services = services or build_services(settings)
    providers = providers or ProviderRegistry.from_settings(settings)
    scheduler = scheduler or build_scheduler(services, providers)
    handlers_installed = install_signal_handlers(scheduler)
    logger.info("worker: connected, testing=%s, providers=%s", settings.testing, providers.names())
    try:
        await scheduler.run()
    except asyncio.CancelledError:
        scheduler.stop()
        raise
    finally:
        if handlers_installed:
            remove_signal_handlers()
        await providers.aclose()
        if owns_services:
            await services.close()


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker: exiting")

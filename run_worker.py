#!/usr/bin/env python
"""Run the delay resumption worker (long-running, for a process supervisor)."""

import asyncio
import signal

from dotenv import load_dotenv
load_dotenv()

import structlog

from outflow.core.cli import build_engine
from outflow.core.config import DEFAULT_CONFIG_PATH, load_settings
from outflow.core.db import DEFAULT_DB_PATH, init_db

log = structlog.get_logger()


async def main():
    """Poll for due wake-ups and scheduled triggers until SIGINT/SIGTERM."""
    init_db(DEFAULT_DB_PATH)
    settings = load_settings(DEFAULT_CONFIG_PATH)
    scheduler, dispatcher, wakeups = build_engine(DEFAULT_DB_PATH, DEFAULT_CONFIG_PATH, settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    log.info("worker_starting", poll_interval=settings.resumer.poll_interval_seconds)
    await wakeups.run_forever(scheduler, stop, dispatcher=dispatcher)
    log.info("worker_stopped")


if __name__ == "__main__":
    asyncio.run(main())

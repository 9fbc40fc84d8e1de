"""
Maintenance scheduler process.

Runs the recurring maintenance tasks. Any number of replicas may run
against the same database; each due task run is claimed by one of them.
"""

import asyncio
import signal

from voucher_service.config import get_settings
from voucher_service.db import close_db, get_engine, init_db
from voucher_service.maintenance.scheduler import Scheduler, build_default_tasks
from voucher_service.observability.logging import setup_logging
from voucher_service.observability.metrics import setup_metrics
from voucher_service.observability.tracing import instrument_sqlalchemy, setup_tracing
from voucher_service.queue.pipeline import JobQueue


async def run_async() -> None:
    """Run the scheduler asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine())

    queue = JobQueue(session_factory, settings)
    scheduler = Scheduler(
        session_factory,
        build_default_tasks(session_factory, queue, settings),
        tick_seconds=settings.scheduler_tick_seconds,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(scheduler.stop()),
        )

    try:
        await scheduler.start()
    finally:
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()

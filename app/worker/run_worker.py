"""Run the housekeeping worker. Usage: python -m app.worker.run_worker"""

import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.worker.tasks import cleanup_operations, shutdown, startup, sweep_stale_operations


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        sweep_stale_operations,
        CronTrigger(second=0, timezone="UTC"),  # every minute at :00
        id="sweep_stale_operations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        cleanup_operations,
        CronTrigger(minute=5, second=0, timezone="UTC"),  # hourly at :05
        id="cleanup_operations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def run() -> None:
    await startup()
    scheduler = build_scheduler()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()

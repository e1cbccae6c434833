"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

import asyncio

from arq.cron import cron
from arq.worker import Worker

from app.worker.tasks import expire_lapsed_subscriptions, expire_stale_jobs, get_redis_settings, shutdown, startup


async def main():
    worker = Worker(
        functions=[],
        cron_jobs=[
            cron(expire_stale_jobs, minute=0, second=0),  # hourly
            cron(expire_lapsed_subscriptions, minute=5, second=0),  # hourly, offset from job expiry
        ],
        redis_settings=get_redis_settings(),
        on_startup=startup,
        on_shutdown=shutdown,
    )
    await worker.async_run()


if __name__ == "__main__":
    asyncio.run(main())

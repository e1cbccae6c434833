"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
            retries=0,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def expire_stale_jobs(ctx: dict[str, Any]) -> None:
    """Cron job: expire draft/open jobs that passed their end date or expiry window."""
    from app.worker.cron import run_expire_stale_jobs
    await _run_with_dlq("expire_stale_jobs", _job_id(ctx), [], {}, run_expire_stale_jobs())


async def expire_lapsed_subscriptions(ctx: dict[str, Any]) -> None:
    """Cron job: mark enrollments whose period ended as expired."""
    from app.worker.cron import run_expire_lapsed_subscriptions
    await _run_with_dlq("expire_lapsed_subscriptions", _job_id(ctx), [], {}, run_expire_lapsed_subscriptions())


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    from app.db.init import close_db
    close_db()


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )

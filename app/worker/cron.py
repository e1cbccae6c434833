"""Cron bodies: time-based expiry of jobs and subscription enrollments."""

from datetime import datetime

from app.core.logging import get_logger
from app.services import jobs as jobs_service
from app.services import subscriptions as subscriptions_service

log = get_logger(__name__)


async def run_expire_stale_jobs(now: datetime | None = None) -> int:
    """Expire draft/open jobs past their end date or the expiry window."""
    count = await jobs_service.expire_stale_jobs(now)
    log.info("expire_stale_jobs", expired=count)
    return count


async def run_expire_lapsed_subscriptions(now: datetime | None = None) -> int:
    count = await subscriptions_service.expire_lapsed_subscriptions(now)
    log.info("expire_lapsed_subscriptions", expired=count)
    return count

"""Job lifecycle: draft -> open -> in-progress -> completed, plus cancel and expire.

Every transition is a conditional update filtered on the allowed source states, so two
requests racing on the same job cannot both succeed and neither can overwrite the other.
"""

from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Or, Set

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, InvalidStateTransitionError, NotFoundError
from app.core.logging import get_logger
from app.core.security import Principal
from app.models.application import Application
from app.models.job import TERMINAL_JOB_STATUSES, CompletionDetails, Job

log = get_logger(__name__)

# target status -> statuses it may be entered from
JOB_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "open": ("draft",),
    "in-progress": ("open",),
    "completed": ("in-progress",),
    "canceled": ("draft", "open", "in-progress"),
    "expired": ("draft", "open", "in-progress"),
}

DELETABLE_JOB_STATUSES: tuple[str, ...] = ("draft", "open", "completed", "canceled", "expired")


async def get_job_or_404(job_id: PydanticObjectId, session=None) -> Job:
    job = await Job.get(job_id, session=session)
    if not job:
        raise NotFoundError("Job not found")
    return job


def is_owner(job: Job, principal: Principal) -> bool:
    return str(job.customer_id) == principal.user_id


def _require_owner_or_admin(job: Job, principal: Principal) -> None:
    if not (principal.is_admin or is_owner(job, principal)):
        raise ForbiddenError("Only the job owner or an admin can do this")


async def _transition(
    job: Job,
    target: str,
    updates: dict[str, Any] | None = None,
    session=None,
) -> Job:
    sources = JOB_TRANSITIONS[target]
    if job.status not in sources:
        raise InvalidStateTransitionError("job", job.status, sources, target)
    fields = {"status": target, "updated_at": datetime.utcnow(), **(updates or {})}
    updated = await Job.find_one(Job.id == job.id, In(Job.status, list(sources)), session=session).update(
        Set(fields),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        # Someone else moved the job between our read and the update.
        current = await Job.get(job.id, session=session)
        raise InvalidStateTransitionError("job", current.status if current else "deleted", sources, target)
    log.info("job_transition", job_id=str(job.id), from_status=job.status, to_status=target)
    return updated


async def create_job(principal: Principal, data: dict[str, Any]) -> Job:
    if principal.role == "tradesperson":
        raise ForbiddenError("Only customers can post jobs")
    settings = get_settings()
    needs_approval = settings.job_approval_required and principal.role == "customer"
    job = Job(
        **data,
        customer_id=PydanticObjectId(principal.user_id),
        status="draft" if needs_approval else "open",
        credit_cost=settings.default_credit_cost,
    )
    await job.insert()
    log.info("job_created", job_id=str(job.id), status=job.status)
    return job


async def approve_job(principal: Principal, job_id: PydanticObjectId, credit_cost: int) -> Job:
    """Admin: publish a draft job at the given per-application credit cost."""
    if not principal.is_admin:
        raise ForbiddenError("Only admins can approve jobs")
    if isinstance(credit_cost, bool) or not isinstance(credit_cost, int) or credit_cost < 1:
        raise BadRequestError("Credit cost must be at least 1")
    job = await get_job_or_404(job_id)
    job = await _transition(job, "open", {"credit_cost": credit_cost})
    await log_event(principal.user_id, "job_approved", "job", str(job.id), {"credit_cost": credit_cost})
    return job


async def start_job(job: Job, tradesperson_id: PydanticObjectId, session=None) -> Job:
    """Claim an open job for the accepted tradesperson. Only application acceptance calls this."""
    return await _transition(
        job,
        "in-progress",
        {"selected_tradesperson_id": tradesperson_id, "timeline.start_date": datetime.utcnow()},
        session=session,
    )


async def release_job(job_id: PydanticObjectId, tradesperson_id: PydanticObjectId, session=None) -> None:
    """Undo start_job when the rest of an acceptance failed."""
    await Job.find_one(
        Job.id == job_id,
        Job.status == "in-progress",
        Job.selected_tradesperson_id == tradesperson_id,
        session=session,
    ).update(
        Set({"status": "open", "selected_tradesperson_id": None, "timeline.start_date": None}),
        session=session,
    )
    log.info("job_released", job_id=str(job_id))


async def complete_job(
    principal: Principal,
    job_id: PydanticObjectId,
    final_amount: float | None = None,
    customer_feedback: str = "",
) -> Job:
    job = await get_job_or_404(job_id)
    if not is_owner(job, principal):
        raise ForbiddenError("Only the job owner can mark it completed")
    if job.status == "in-progress":
        if not job.selected_tradesperson_id:
            raise BadRequestError("No tradesperson has been selected for this job")
        accepted = await Application.find_one(
            Application.job_id == job.id,
            Application.tradesperson_id == job.selected_tradesperson_id,
            Application.status == "accepted",
        )
        if not accepted:
            raise BadRequestError("No accepted application for this job")
    if final_amount is None:
        final_amount = job.budget.min_amount or 0
    details = CompletionDetails(
        completed_at=datetime.utcnow(),
        final_amount=final_amount,
        customer_feedback=customer_feedback,
    )
    job = await _transition(job, "completed", {"completion_details": details.model_dump()})
    await log_event(principal.user_id, "job_completed", "job", str(job.id), {"final_amount": final_amount})
    return job


async def cancel_job(principal: Principal, job_id: PydanticObjectId) -> Job:
    job = await get_job_or_404(job_id)
    _require_owner_or_admin(job, principal)
    job = await _transition(job, "canceled")
    await log_event(principal.user_id, "job_canceled", "job", str(job.id))
    return job


async def expire_job(job_id: PydanticObjectId) -> Job:
    job = await get_job_or_404(job_id)
    return await _transition(job, "expired")


async def set_status_as_admin(principal: Principal, job_id: PydanticObjectId, status: str) -> Job:
    """Admin override limited to the transitions that need no other input."""
    if not principal.is_admin:
        raise ForbiddenError("Only admins can change job status")
    if status == "canceled":
        return await cancel_job(principal, job_id)
    if status == "expired":
        job = await expire_job(job_id)
        await log_event(principal.user_id, "job_expired", "job", str(job.id))
        return job
    raise BadRequestError(
        "Admins can only cancel or expire jobs here; use approve, accept or complete for other transitions"
    )


async def expire_stale_jobs(now: datetime | None = None) -> int:
    """Expire draft/open jobs past their end date or older than the expiry window."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=get_settings().job_expiry_days)
    result = await Job.find(
        In(Job.status, ["draft", "open"]),
        Or({"timeline.end_date": {"$lt": now}}, {"timeline.posted_date": {"$lt": cutoff}}),
    ).update(Set({"status": "expired", "updated_at": now}))
    count = getattr(result, "modified_count", 0) if result is not None else 0
    if count:
        log.info("jobs_expired", count=count)
    return count


async def delete_job(principal: Principal, job_id: PydanticObjectId) -> None:
    job = await get_job_or_404(job_id)
    _require_owner_or_admin(job, principal)
    deleted = await Job.find_one(Job.id == job.id, Job.status != "in-progress").delete()
    if not deleted or not deleted.deleted_count:
        current = await Job.get(job.id)
        if current is None:
            raise NotFoundError("Job not found")
        raise InvalidStateTransitionError("job", current.status, DELETABLE_JOB_STATUSES, "deleted")
    await Application.find(Application.job_id == job.id).delete()
    await log_event(principal.user_id, "job_deleted", "job", str(job.id))
    log.info("job_deleted", job_id=str(job.id))


async def list_jobs(
    principal: Principal | None,
    status: str | None = None,
    mine: bool = False,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Job], int]:
    """Public callers see open jobs; owners see their own; admins see everything."""
    filters: list[Any] = []
    if mine and principal is not None:
        uid = PydanticObjectId(principal.user_id)
        if principal.role == "tradesperson":
            filters.append(Job.selected_tradesperson_id == uid)
        else:
            filters.append(Job.customer_id == uid)
        if status:
            filters.append(Job.status == status)
    elif principal is not None and principal.is_admin:
        if status:
            filters.append(Job.status == status)
    else:
        filters.append(Job.status == "open")
    query = Job.find(*filters)
    total = await query.count()
    items = await Job.find(*filters).sort(-Job.created_at).skip(offset).limit(limit).to_list()
    return items, total


def can_view(job: Job, principal: Principal | None) -> bool:
    if job.status == "open":
        return True
    if principal is None:
        return False
    if principal.is_admin or is_owner(job, principal):
        return True
    return job.selected_tradesperson_id is not None and str(job.selected_tradesperson_id) == principal.user_id


def is_terminal(job: Job) -> bool:
    return job.status in TERMINAL_JOB_STATUSES


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "title": job.title,
        "description": job.description,
        "category": job.category,
        "required_skills": job.required_skills,
        "budget": job.budget.model_dump(),
        "location": job.location.model_dump(),
        "customer_id": str(job.customer_id),
        "status": job.status,
        "selected_tradesperson_id": str(job.selected_tradesperson_id) if job.selected_tradesperson_id else None,
        "credit_cost": job.credit_cost,
        "application_count": job.application_count,
        "is_urgent": job.is_urgent,
        "timeline": job.timeline.model_dump(mode="json"),
        "completion_details": job.completion_details.model_dump(mode="json") if job.completion_details else None,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.exceptions import NotFoundError
from app.core.pagination import page_of, paginate
from app.core.security import Principal
from app.deps import get_optional_principal, get_principal, parse_object_id, require_tradesperson
from app.models.application import Bid
from app.models.job import Budget, Location
from app.services import applications as applications_service
from app.services import jobs as jobs_service

router = APIRouter()


class JobCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=2000)
    category: str = Field(min_length=1)
    required_skills: list[str] = Field(default_factory=list)
    budget: Budget = Field(default_factory=Budget)
    location: Location
    is_urgent: bool = False
    end_date: datetime | None = None


class JobComplete(BaseModel):
    final_amount: float | None = Field(default=None, ge=0)
    customer_feedback: str = ""


class ApplicationCreate(BaseModel):
    cover_letter: str = Field(min_length=1, max_length=1000)
    bid: Bid = Field(default_factory=Bid)
    additional_details: str | None = Field(default=None, max_length=500)


class AcceptRequest(BaseModel):
    application_id: str


@router.post("")
async def job_create(body: JobCreate, principal: Principal = Depends(get_principal)):
    """Post a job. Customer jobs start as draft until an admin sets their credit cost."""
    data = body.model_dump(exclude={"end_date"})
    data["timeline"] = {"end_date": body.end_date}
    job = await jobs_service.create_job(principal, data)
    return jobs_service.job_to_dict(job)


@router.get("")
async def jobs_list(
    principal: Principal | None = Depends(get_optional_principal),
    status: str | None = None,
    mine: bool = False,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Open jobs for everyone; ``mine=true`` lists the caller's own jobs."""
    limit, offset = paginate(limit, offset)
    items, total = await jobs_service.list_jobs(principal, status=status, mine=mine, limit=limit, offset=offset)
    return page_of([jobs_service.job_to_dict(j) for j in items], limit, offset, total)


@router.get("/{job_id}")
async def job_get(job_id: str, principal: Principal | None = Depends(get_optional_principal)):
    job = await jobs_service.get_job_or_404(parse_object_id(job_id, "job id"))
    if not jobs_service.can_view(job, principal):
        raise NotFoundError("Job not found")
    return jobs_service.job_to_dict(job)


@router.delete("/{job_id}")
async def job_delete(job_id: str, principal: Principal = Depends(get_principal)):
    await jobs_service.delete_job(principal, parse_object_id(job_id, "job id"))
    return {"deleted": True}


@router.post("/{job_id}/complete")
async def job_complete(job_id: str, body: JobComplete, principal: Principal = Depends(get_principal)):
    job = await jobs_service.complete_job(
        principal,
        parse_object_id(job_id, "job id"),
        final_amount=body.final_amount,
        customer_feedback=body.customer_feedback,
    )
    return jobs_service.job_to_dict(job)


@router.post("/{job_id}/cancel")
async def job_cancel(job_id: str, principal: Principal = Depends(get_principal)):
    job = await jobs_service.cancel_job(principal, parse_object_id(job_id, "job id"))
    return jobs_service.job_to_dict(job)


@router.post("/{job_id}/applications")
async def job_apply(job_id: str, body: ApplicationCreate, principal: Principal = Depends(require_tradesperson)):
    """Apply for an open job; debits the job's credit cost."""
    application, account = await applications_service.apply(
        principal,
        parse_object_id(job_id, "job id"),
        body.model_dump(),
    )
    return {
        "application": applications_service.application_to_dict(application),
        "credits_used": application.credit_cost,
        "credits_available": account.available,
    }


@router.get("/{job_id}/applications")
async def job_applications(
    job_id: str,
    principal: Principal = Depends(get_principal),
    status: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    items, total = await applications_service.list_for_job(
        principal, parse_object_id(job_id, "job id"), status=status, limit=limit, offset=offset
    )
    return page_of(items, limit, offset, total)


@router.post("/{job_id}/accept")
async def job_accept(job_id: str, body: AcceptRequest, principal: Principal = Depends(get_principal)):
    """Accept an application; the job goes in-progress and the other applicants are rejected."""
    jid = parse_object_id(job_id, "job id")
    application_id = parse_object_id(body.application_id, "application id")
    application = await applications_service.get_application_or_404(application_id)
    if application.job_id != jid:
        raise NotFoundError("Application not found for this job")
    accepted, job = await applications_service.accept(principal, application_id)
    return {
        "application": applications_service.application_to_dict(accepted),
        "job": jobs_service.job_to_dict(job),
    }

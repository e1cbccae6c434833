from datetime import datetime
from typing import Literal

from beanie.operators import Set
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.exceptions import NotFoundError
from app.core.security import Principal
from app.deps import parse_object_id, require_admin
from app.models.user import User
from app.services import jobs as jobs_service
from app.services import ledger
from app.services import subscriptions as subscriptions_service

router = APIRouter()


class ApproveJobRequest(BaseModel):
    credit_cost: int = Field(ge=1)


class JobStatusRequest(BaseModel):
    status: Literal["canceled", "expired"]


class GrantCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    transaction_type: Literal["bonus", "refund", "purchase"] = "bonus"
    notes: str = ""


class PlanCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: float = Field(ge=0)
    currency: str = "usd"
    billing_period: Literal["month", "year"] = "month"
    credits_per_period: int = Field(ge=1)
    benefits: list[str] = Field(default_factory=list)
    is_active: bool = True
    display_order: int = 0


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    currency: str | None = None
    billing_period: Literal["month", "year"] | None = None
    credits_per_period: int | None = Field(default=None, ge=1)
    benefits: list[str] | None = None
    is_active: bool | None = None
    display_order: int | None = None


async def _get_tradesperson(user_id: str) -> User:
    user = await User.get(parse_object_id(user_id, "user id"))
    if not user or user.role != "tradesperson":
        raise NotFoundError("Tradesperson not found")
    return user


@router.post("/jobs/{job_id}/approve")
async def admin_job_approve(job_id: str, body: ApproveJobRequest, principal: Principal = Depends(require_admin)):
    """Admin: publish a draft job at the given credit cost."""
    job = await jobs_service.approve_job(principal, parse_object_id(job_id, "job id"), body.credit_cost)
    return jobs_service.job_to_dict(job)


@router.patch("/jobs/{job_id}/status")
async def admin_job_status(job_id: str, body: JobStatusRequest, principal: Principal = Depends(require_admin)):
    job = await jobs_service.set_status_as_admin(principal, parse_object_id(job_id, "job id"), body.status)
    return jobs_service.job_to_dict(job)


@router.post("/tradespeople/{user_id}/credits")
async def admin_grant_credits(user_id: str, body: GrantCreditsRequest, principal: Principal = Depends(require_admin)):
    """Admin: add credits to a tradesperson's account."""
    user = await _get_tradesperson(user_id)
    account = await ledger.credit(
        user.id,
        body.amount,
        body.transaction_type,
        notes=body.notes or f"Granted by admin {principal.user_id}",
    )
    await log_event(
        principal.user_id,
        "credits_granted",
        "credit_account",
        str(user.id),
        {"amount": body.amount, "transaction_type": body.transaction_type},
    )
    return {"user_id": str(user.id), "available": account.available, "spent": account.spent}


@router.get("/tradespeople/{user_id}/credits")
async def admin_credit_history(
    user_id: str,
    principal: Principal = Depends(require_admin),
    limit: int = Query(50, ge=1, le=500),
):
    user = await _get_tradesperson(user_id)
    account = await ledger.get_account(user.id)
    entries = await ledger.history(user.id, limit=limit)
    return {
        "user_id": str(user.id),
        "available": account.available,
        "spent": account.spent,
        "entries": [ledger.entry_to_dict(e) for e in entries],
    }


@router.post("/users/{user_id}/verify")
async def admin_verify_user(user_id: str, principal: Principal = Depends(require_admin)):
    """Admin: mark a tradesperson verified so they can apply for jobs."""
    user = await _get_tradesperson(user_id)
    await User.find_one(User.id == user.id).update(Set({"is_verified": True, "updated_at": datetime.utcnow()}))
    await log_event(principal.user_id, "user_verified", "user", str(user.id))
    return {"user_id": str(user.id), "is_verified": True}


@router.get("/subscription-plans")
async def admin_plans_list(principal: Principal = Depends(require_admin)):
    plans = await subscriptions_service.list_plans(include_inactive=True)
    return {"plans": [subscriptions_service.plan_to_dict(p) for p in plans]}


@router.post("/subscription-plans")
async def admin_plan_create(body: PlanCreate, principal: Principal = Depends(require_admin)):
    plan = await subscriptions_service.create_plan(principal, body.model_dump())
    return subscriptions_service.plan_to_dict(plan)


@router.patch("/subscription-plans/{plan_id}")
async def admin_plan_update(plan_id: str, body: PlanUpdate, principal: Principal = Depends(require_admin)):
    plan = await subscriptions_service.update_plan(
        principal, parse_object_id(plan_id, "plan id"), body.model_dump(exclude_unset=True)
    )
    return subscriptions_service.plan_to_dict(plan)


@router.delete("/subscription-plans/{plan_id}")
async def admin_plan_deactivate(plan_id: str, principal: Principal = Depends(require_admin)):
    """Deactivate rather than delete; existing enrollments keep their plan."""
    plan = await subscriptions_service.deactivate_plan(principal, parse_object_id(plan_id, "plan id"))
    return subscriptions_service.plan_to_dict(plan)

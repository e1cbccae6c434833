"""Applications: credit-debited submission, owner review, withdrawal and acceptance.

Submitting debits the job's credit cost before the application is stored; a lost race on
the unique (job, tradesperson) index is refunded. Accepting is the compound step: claim the
job, accept this application, reject every other active one.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import In, Inc, Push, Set
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.exceptions import (
    BadRequestError,
    DuplicateApplicationError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
)
from app.core.logging import get_logger
from app.core.security import Principal
from app.db.init import transaction
from app.models.application import ACTIVE_APPLICATION_STATUSES, Application, StatusChange
from app.models.credit_account import CreditAccount
from app.models.job import Job
from app.models.user import User
from app.services import jobs as jobs_service
from app.services import ledger

log = get_logger(__name__)

OWNER_TARGET_STATUSES = ("shortlisted", "accepted", "rejected")
ACCEPTED_NOTE = "Application accepted"
REJECTED_NOTE = "Another application was accepted"


async def get_application_or_404(application_id: PydanticObjectId, session=None) -> Application:
    application = await Application.get(application_id, session=session)
    if not application:
        raise NotFoundError("Application not found")
    return application


def _is_applicant(application: Application, principal: Principal) -> bool:
    return str(application.tradesperson_id) == principal.user_id


async def apply(principal: Principal, job_id: PydanticObjectId, data: dict[str, Any]) -> tuple[Application, CreditAccount]:
    """Submit an application, paying the job's credit cost. Returns (application, account)."""
    if principal.role != "tradesperson":
        raise ForbiddenError("Only tradespeople can apply for jobs")
    tradesperson_id = PydanticObjectId(principal.user_id)
    user = await User.get(tradesperson_id)
    if not user:
        raise NotFoundError("User not found")
    if not user.is_verified:
        raise ForbiddenError("Your account must be verified before you can apply for jobs")
    job = await jobs_service.get_job_or_404(job_id)
    if job.status != "open":
        raise InvalidStateTransitionError("job", job.status, ["open"])
    existing = await Application.find_one(
        Application.job_id == job.id,
        Application.tradesperson_id == tradesperson_id,
    )
    if existing:
        raise DuplicateApplicationError()

    application_id = PydanticObjectId()
    cost = job.credit_cost
    async with transaction() as session:
        account = await ledger.debit(
            tradesperson_id,
            cost,
            "usage",
            related_to=application_id,
            related_model="Application",
            notes=f"Applied for job: {job.title}",
            session=session,
        )
        application = Application(
            id=application_id,
            job_id=job.id,
            tradesperson_id=tradesperson_id,
            credit_cost=cost,
            status_history=[StatusChange(status="pending", changed_by=principal.user_id, note="Application submitted")],
            **data,
        )
        try:
            await application.insert(session=session)
        except Exception as e:
            if session is None:
                # No transaction to abort: give the debit back before surfacing the failure.
                account = await ledger.credit(
                    tradesperson_id,
                    cost,
                    "refund",
                    related_to=application_id,
                    related_model="Application",
                    notes=f"Refund: application not saved for job: {job.title}",
                )
                log.info("application_debit_refunded", job_id=str(job.id), credits=cost, error=type(e).__name__)
            if isinstance(e, DuplicateKeyError):
                raise DuplicateApplicationError() from e
            raise
        await Job.find_one(Job.id == job.id, session=session).update(
            Inc({Job.application_count: 1}),
            session=session,
        )
    log.info("application_submitted", application_id=str(application.id), job_id=str(job.id), credits=cost)
    return application, account


async def _change_status(
    application: Application,
    target: str,
    principal: Principal,
    note: str | None = None,
    extra: dict[str, Any] | None = None,
    session=None,
    now: datetime | None = None,
) -> Application:
    if application.status not in ACTIVE_APPLICATION_STATUSES:
        raise InvalidStateTransitionError("application", application.status, ACTIVE_APPLICATION_STATUSES, target)
    now = now or datetime.utcnow()
    change = StatusChange(status=target, changed_at=now, changed_by=principal.user_id, note=note)
    updated = await Application.find_one(
        Application.id == application.id,
        In(Application.status, list(ACTIVE_APPLICATION_STATUSES)),
        session=session,
    ).update(
        Set({"status": target, "last_updated": now, **(extra or {})}),
        Push({Application.status_history: change.model_dump()}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        current = await Application.get(application.id, session=session)
        raise InvalidStateTransitionError(
            "application", current.status if current else "deleted", ACTIVE_APPLICATION_STATUSES, target
        )
    log.info("application_transition", application_id=str(application.id), from_status=application.status, to_status=target)
    return updated


async def _load_for_owner(principal: Principal, application_id: PydanticObjectId) -> tuple[Application, Job]:
    application = await get_application_or_404(application_id)
    job = await jobs_service.get_job_or_404(application.job_id)
    if not (principal.is_admin or jobs_service.is_owner(job, principal)):
        raise ForbiddenError("Only the job owner or an admin can update this application")
    return application, job


async def accept(principal: Principal, application_id: PydanticObjectId) -> tuple[Application, Job]:
    """Accept one application: job goes in-progress, every other active application is rejected."""
    application, job = await _load_for_owner(principal, application_id)
    if application.status not in ACTIVE_APPLICATION_STATUSES:
        raise InvalidStateTransitionError("application", application.status, ACTIVE_APPLICATION_STATUSES, "accepted")
    # Mongo keeps milliseconds; the stamp must survive a round trip to identify our own changes.
    now = datetime.utcnow()
    now = now.replace(microsecond=now.microsecond // 1000 * 1000)
    async with transaction() as session:
        job = await jobs_service.start_job(job, application.tradesperson_id, session=session)
        try:
            accepted = await _change_status(
                application, "accepted", principal, note=ACCEPTED_NOTE, session=session, now=now
            )
            await _reject_others(job.id, application.id, principal, now, session=session)
        except Exception:
            if session is None:
                await _undo_accept(job.id, now)
                await jobs_service.release_job(job.id, application.tradesperson_id)
            raise
    try:
        await log_event(
            principal.user_id,
            "application_accepted",
            "application",
            str(application.id),
            {"job_id": str(job.id), "tradesperson_id": str(application.tradesperson_id)},
        )
    except Exception:
        # The acceptance is committed; a missing audit row must not turn it into an error.
        log.exception("audit_write_failed", event_type="application_accepted", application_id=str(application.id))
    log.info("application_accepted", application_id=str(application.id), job_id=str(job.id))
    return accepted, job


async def _reject_others(
    job_id: PydanticObjectId,
    accepted_id: PydanticObjectId,
    principal: Principal,
    now: datetime,
    session=None,
) -> None:
    rejection = StatusChange(status="rejected", changed_at=now, changed_by=principal.user_id, note=REJECTED_NOTE)
    await Application.find(
        Application.job_id == job_id,
        Application.id != accepted_id,
        In(Application.status, list(ACTIVE_APPLICATION_STATUSES)),
        session=session,
    ).update(
        Set({"status": "rejected", "last_updated": now}),
        Push({Application.status_history: rejection.model_dump()}),
        session=session,
    )


async def _undo_accept(job_id: PydanticObjectId, stamp: datetime) -> None:
    """Put back every application this acceptance moved, using the status before its last change."""
    moved = await Application.find(
        Application.job_id == job_id,
        In(Application.status, ["accepted", "rejected"]),
    ).to_list()
    for a in moved:
        if len(a.status_history) < 2:
            continue
        last, previous = a.status_history[-1], a.status_history[-2]
        if last.changed_at != stamp or last.note not in (ACCEPTED_NOTE, REJECTED_NOTE):
            continue
        await Application.find_one(Application.id == a.id, Application.status == a.status).update(
            {
                "$set": {"status": previous.status, "last_updated": datetime.utcnow()},
                "$pop": {"status_history": 1},
            }
        )
        log.info("application_transition_undone", application_id=str(a.id), restored=previous.status)


async def update_status(
    principal: Principal,
    application_id: PydanticObjectId,
    status: str,
    note: str | None = None,
) -> Application:
    if status not in OWNER_TARGET_STATUSES:
        raise BadRequestError(f"Cannot set application status to {status}")
    if status == "accepted":
        accepted, _ = await accept(principal, application_id)
        return accepted
    application, job = await _load_for_owner(principal, application_id)
    if jobs_service.is_terminal(job):
        raise InvalidStateTransitionError("job", job.status, ["open", "in-progress"])
    return await _change_status(application, status, principal, note=note)


async def withdraw(principal: Principal, application_id: PydanticObjectId, reason: str | None = None) -> Application:
    application = await get_application_or_404(application_id)
    if not _is_applicant(application, principal):
        raise ForbiddenError("Only the applicant can withdraw this application")
    job = await jobs_service.get_job_or_404(application.job_id)
    if jobs_service.is_terminal(job):
        raise InvalidStateTransitionError("job", job.status, ["open", "in-progress"])
    return await _change_status(
        application,
        "withdrawn",
        principal,
        note=reason,
        extra={"withdrawal_reason": reason},
    )


async def get_application(principal: Principal, application_id: PydanticObjectId) -> Application:
    """Fetch with access control. The job owner opening a pending application marks it viewed."""
    application = await get_application_or_404(application_id)
    job = await jobs_service.get_job_or_404(application.job_id)
    owner = jobs_service.is_owner(job, principal)
    if not (principal.is_admin or owner or _is_applicant(application, principal)):
        raise ForbiddenError("You do not have access to this application")
    if owner and application.status == "pending":
        now = datetime.utcnow()
        viewed = await Application.find_one(
            Application.id == application.id,
            Application.status == "pending",
        ).update(
            Set({"status": "viewed", "last_updated": now}),
            Push({Application.status_history: StatusChange(status="viewed", changed_at=now, changed_by=principal.user_id).model_dump()}),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        application = viewed or application
    return application


async def update_notes(principal: Principal, application_id: PydanticObjectId, text: str) -> Application:
    """Each party writes its own notes slot: owner -> customer, applicant -> tradesperson, admin -> internal."""
    application = await get_application_or_404(application_id)
    job = await jobs_service.get_job_or_404(application.job_id)
    if principal.is_admin:
        field = "notes.internal"
    elif jobs_service.is_owner(job, principal):
        field = "notes.customer"
    elif _is_applicant(application, principal):
        field = "notes.tradesperson"
    else:
        raise ForbiddenError("You do not have access to this application")
    updated = await Application.find_one(Application.id == application.id).update(
        Set({field: text, "last_updated": datetime.utcnow()}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    return updated or application


async def list_for_job(
    principal: Principal,
    job_id: PydanticObjectId,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    """Owner and admin get full documents; tradespeople see only their own in full."""
    job = await jobs_service.get_job_or_404(job_id)
    full_view = principal.is_admin or jobs_service.is_owner(job, principal)
    filters: list[Any] = [Application.job_id == job.id]
    if status:
        filters.append(Application.status == status)
    total = await Application.find(*filters).count()
    items = await Application.find(*filters).sort(-Application.submitted_at).skip(offset).limit(limit).to_list()
    out = []
    for a in items:
        if full_view or _is_applicant(a, principal):
            out.append(application_to_dict(a))
        else:
            out.append({"id": str(a.id), "status": a.status, "submitted_at": a.submitted_at.isoformat()})
    return out, total


async def list_applications(
    principal: Principal,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[Application], int]:
    uid = PydanticObjectId(principal.user_id)
    filters: list[Any] = []
    if principal.role == "tradesperson":
        filters.append(Application.tradesperson_id == uid)
    elif principal.role == "customer":
        jobs = await Job.find(Job.customer_id == uid).to_list()
        filters.append(In(Application.job_id, [j.id for j in jobs]))
    if status:
        filters.append(Application.status == status)
    total = await Application.find(*filters).count()
    items = await Application.find(*filters).sort(-Application.submitted_at).skip(offset).limit(limit).to_list()
    return items, total


def application_to_dict(application: Application) -> dict[str, Any]:
    return {
        "id": str(application.id),
        "job_id": str(application.job_id),
        "tradesperson_id": str(application.tradesperson_id),
        "status": application.status,
        "cover_letter": application.cover_letter,
        "bid": application.bid.model_dump(),
        "additional_details": application.additional_details,
        "credit_cost": application.credit_cost,
        "withdrawal_reason": application.withdrawal_reason,
        "notes": application.notes.model_dump(),
        "status_history": [h.model_dump(mode="json") for h in application.status_history],
        "submitted_at": application.submitted_at.isoformat(),
        "last_updated": application.last_updated.isoformat(),
    }

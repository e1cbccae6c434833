"""Applications: credit debit on submit, duplicates, owner actions, acceptance."""

import asyncio

import pytest
from pymongo.errors import AutoReconnect

from app.core.exceptions import (
    BadRequestError,
    DuplicateApplicationError,
    ForbiddenError,
    InsufficientCreditsError,
    InvalidStateTransitionError,
)
from app.models.application import Application
from app.models.job import Job
from app.services import applications as applications_service
from app.services import ledger

COVER = {"cover_letter": "Ten years of experience, available this week"}


async def _apply(tradesperson, job, principal_of):
    application, _ = await applications_service.apply(principal_of(tradesperson), job.id, dict(COVER))
    return application


async def test_apply_debits_credit_cost(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 5)
    job = await make_job(customer, credit_cost=1)

    application, account = await applications_service.apply(principal_of(tradesperson), job.id, dict(COVER))

    assert application.status == "pending"
    assert application.credit_cost == 1
    assert account.available == 4
    last = account.history[-1]
    assert last.amount == -1
    assert last.transaction_type == "usage"
    assert last.related_to == application.id
    assert last.related_model == "Application"
    assert (await Job.get(job.id)).application_count == 1


async def test_apply_without_credits_persists_nothing(make_user, make_job, principal_of):
    customer = await make_user("customer")
    tradesperson = await make_user()
    job = await make_job(customer, credit_cost=1)
    with pytest.raises(InsufficientCreditsError):
        await _apply(tradesperson, job, principal_of)
    assert await Application.find_all().count() == 0
    assert await ledger.get_balance(tradesperson.id) == 0


async def test_unverified_tradesperson_cannot_apply(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user(verified=False)
    await fund(tradesperson, 5)
    job = await make_job(customer)
    with pytest.raises(ForbiddenError):
        await _apply(tradesperson, job, principal_of)
    assert await ledger.get_balance(tradesperson.id) == 5


async def test_customer_cannot_apply(make_user, make_job, principal_of):
    customer = await make_user("customer")
    job = await make_job(customer)
    with pytest.raises(ForbiddenError):
        await _apply(customer, job, principal_of)


@pytest.mark.parametrize("status", ["draft", "in-progress", "completed", "canceled", "expired"])
async def test_apply_requires_open_job(make_user, make_job, principal_of, fund, status):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 5)
    job = await make_job(customer, status=status)
    with pytest.raises(InvalidStateTransitionError):
        await _apply(tradesperson, job, principal_of)
    assert await ledger.get_balance(tradesperson.id) == 5


async def test_duplicate_application_rejected_even_after_withdrawal(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 5)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    await applications_service.withdraw(principal_of(tradesperson), application.id, "Booked elsewhere")
    with pytest.raises(DuplicateApplicationError):
        await _apply(tradesperson, job, principal_of)
    assert await ledger.get_balance(tradesperson.id) == 4


async def test_concurrent_duplicate_applications_charge_once(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 5)
    job = await make_job(customer, credit_cost=2)
    results = await asyncio.gather(
        _apply(tradesperson, job, principal_of),
        _apply(tradesperson, job, principal_of),
        return_exceptions=True,
    )
    assert sum(isinstance(r, Application) for r in results) == 1
    assert sum(isinstance(r, DuplicateApplicationError) for r in results) == 1
    assert await Application.find(Application.job_id == job.id).count() == 1
    assert await ledger.get_balance(tradesperson.id) == 3


async def test_concurrent_applications_cannot_overdraw(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    first = await make_job(customer, title="first")
    second = await make_job(customer, title="second")
    results = await asyncio.gather(
        _apply(tradesperson, first, principal_of),
        _apply(tradesperson, second, principal_of),
        return_exceptions=True,
    )
    assert sum(isinstance(r, Application) for r in results) == 1
    assert sum(isinstance(r, InsufficientCreditsError) for r in results) == 1
    assert await ledger.get_balance(tradesperson.id) == 0
    assert await Application.find_all().count() == 1


async def test_accept_rejects_other_applications(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    job = await make_job(customer)
    apps = []
    for _ in range(3):
        tradesperson = await make_user()
        await fund(tradesperson, 1)
        apps.append(await _apply(tradesperson, job, principal_of))
    a, b, c = apps
    await applications_service.update_status(principal_of(customer), c.id, "shortlisted")

    accepted, started = await applications_service.accept(principal_of(customer), a.id)

    assert accepted.status == "accepted"
    assert started.status == "in-progress"
    assert started.selected_tradesperson_id == a.tradesperson_id
    assert started.timeline.start_date is not None
    assert (await Application.get(b.id)).status == "rejected"
    rejected_c = await Application.get(c.id)
    assert rejected_c.status == "rejected"
    assert rejected_c.status_history[-1].note == "Another application was accepted"
    assert await Application.find(Application.job_id == job.id, Application.status == "pending").count() == 0


async def test_concurrent_accepts_leave_one_accepted(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    job = await make_job(customer)
    apps = []
    for _ in range(2):
        tradesperson = await make_user()
        await fund(tradesperson, 1)
        apps.append(await _apply(tradesperson, job, principal_of))
    results = await asyncio.gather(
        *[applications_service.accept(principal_of(customer), a.id) for a in apps],
        return_exceptions=True,
    )
    assert sum(isinstance(r, InvalidStateTransitionError) for r in results) == 1
    assert await Application.find(Application.job_id == job.id, Application.status == "accepted").count() == 1
    assert (await Job.get(job.id)).status == "in-progress"


async def test_failed_acceptance_releases_job(make_user, make_job, principal_of, fund, monkeypatch):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)

    async def lost_race(app, target, *args, **kwargs):
        raise InvalidStateTransitionError("application", "withdrawn", ["pending"], target)

    monkeypatch.setattr(applications_service, "_change_status", lost_race)
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.accept(principal_of(customer), application.id)
    reopened = await Job.get(job.id)
    assert reopened.status == "open"
    assert reopened.selected_tradesperson_id is None


async def test_apply_refunds_when_insert_fails(make_user, make_job, principal_of, fund, monkeypatch):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 5)
    job = await make_job(customer, credit_cost=2)

    async def connection_lost(self, *args, **kwargs):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(Application, "insert", connection_lost)
    with pytest.raises(AutoReconnect):
        await _apply(tradesperson, job, principal_of)
    monkeypatch.undo()

    account = await ledger.get_account(tradesperson.id)
    assert account.available == 5
    assert [e.transaction_type for e in account.history][-2:] == ["usage", "refund"]
    assert await Application.find_all().count() == 0
    assert (await Job.get(job.id)).application_count == 0


async def test_accept_failing_midway_restores_everything(make_user, make_job, principal_of, fund, monkeypatch):
    customer = await make_user("customer")
    job = await make_job(customer)
    apps = []
    for _ in range(3):
        tradesperson = await make_user()
        await fund(tradesperson, 1)
        apps.append(await _apply(tradesperson, job, principal_of))
    a, b, c = apps
    await applications_service.update_status(principal_of(customer), c.id, "shortlisted")
    history_lengths = {x.id: len((await Application.get(x.id)).status_history) for x in apps}

    reject_others = applications_service._reject_others

    async def reject_then_fail(*args, **kwargs):
        await reject_others(*args, **kwargs)
        raise AutoReconnect("primary stepped down")

    monkeypatch.setattr(applications_service, "_reject_others", reject_then_fail)
    with pytest.raises(AutoReconnect):
        await applications_service.accept(principal_of(customer), a.id)

    reopened = await Job.get(job.id)
    assert reopened.status == "open"
    assert reopened.selected_tradesperson_id is None
    restored = {x.id: await Application.get(x.id) for x in apps}
    assert restored[a.id].status == "pending"
    assert restored[b.id].status == "pending"
    assert restored[c.id].status == "shortlisted"
    assert {k: len(v.status_history) for k, v in restored.items()} == history_lengths

    monkeypatch.undo()
    accepted, _ = await applications_service.accept(principal_of(customer), a.id)
    assert accepted.status == "accepted"


async def test_accept_survives_audit_failure(make_user, make_job, principal_of, fund, monkeypatch):
    customer = await make_user("customer")
    tradesperson = await make_user()
    rival = await make_user()
    job = await make_job(customer)
    for tp in (tradesperson, rival):
        await fund(tp, 1)
    application = await _apply(tradesperson, job, principal_of)
    other = await _apply(rival, job, principal_of)

    async def audit_down(*args, **kwargs):
        raise AutoReconnect("audit store unreachable")

    monkeypatch.setattr(applications_service, "log_event", audit_down)
    accepted, started = await applications_service.accept(principal_of(customer), application.id)

    assert accepted.status == "accepted"
    assert started.status == "in-progress"
    assert (await Application.get(other.id)).status == "rejected"


async def test_only_owner_or_admin_changes_status(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    with pytest.raises(ForbiddenError):
        await applications_service.update_status(principal_of(tradesperson), application.id, "accepted")
    with pytest.raises(BadRequestError):
        await applications_service.update_status(principal_of(customer), application.id, "pending")


async def test_terminal_applications_never_move(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    await applications_service.update_status(principal_of(customer), application.id, "rejected")
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.update_status(principal_of(customer), application.id, "shortlisted")
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.withdraw(principal_of(tradesperson), application.id)
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.accept(principal_of(customer), application.id)
    assert (await Job.get(job.id)).status == "open"


async def test_no_transitions_on_terminal_job(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    await Job.find_one(Job.id == job.id).update({"$set": {"status": "canceled"}})
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.update_status(principal_of(customer), application.id, "shortlisted")
    with pytest.raises(InvalidStateTransitionError):
        await applications_service.withdraw(principal_of(tradesperson), application.id)


async def test_only_applicant_withdraws(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    with pytest.raises(ForbiddenError):
        await applications_service.withdraw(principal_of(customer), application.id)
    withdrawn = await applications_service.withdraw(principal_of(tradesperson), application.id, "Too far")
    assert withdrawn.status == "withdrawn"
    assert withdrawn.withdrawal_reason == "Too far"
    assert [h.status for h in withdrawn.status_history] == ["pending", "withdrawn"]


async def test_owner_viewing_marks_viewed(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)

    as_applicant = await applications_service.get_application(principal_of(tradesperson), application.id)
    assert as_applicant.status == "pending"
    as_owner = await applications_service.get_application(principal_of(customer), application.id)
    assert as_owner.status == "viewed"
    # viewed behaves like pending
    accepted, _ = await applications_service.accept(principal_of(customer), application.id)
    assert accepted.status == "accepted"


async def test_stranger_cannot_read_application(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    tradesperson = await make_user()
    stranger = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    with pytest.raises(ForbiddenError):
        await applications_service.get_application(principal_of(stranger), application.id)


async def test_notes_go_to_callers_slot(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    admin = await make_user("admin")
    tradesperson = await make_user()
    await fund(tradesperson, 1)
    job = await make_job(customer)
    application = await _apply(tradesperson, job, principal_of)
    await applications_service.update_notes(principal_of(customer), application.id, "Call Tuesday")
    await applications_service.update_notes(principal_of(tradesperson), application.id, "Bring ladder")
    updated = await applications_service.update_notes(principal_of(admin), application.id, "Checked insurance")
    assert updated.notes.customer == "Call Tuesday"
    assert updated.notes.tradesperson == "Bring ladder"
    assert updated.notes.internal == "Checked insurance"


async def test_job_listing_hides_competitors_details(make_user, make_job, principal_of, fund):
    customer = await make_user("customer")
    first = await make_user()
    second = await make_user()
    job = await make_job(customer)
    for tp in (first, second):
        await fund(tp, 1)
        await _apply(tp, job, principal_of)

    owner_view, total = await applications_service.list_for_job(principal_of(customer), job.id)
    assert total == 2
    assert all("cover_letter" in a for a in owner_view)

    tp_view, _ = await applications_service.list_for_job(principal_of(first), job.id)
    own = [a for a in tp_view if a.get("tradesperson_id") == str(first.id)]
    others = [a for a in tp_view if "tradesperson_id" not in a]
    assert len(own) == 1 and len(others) == 1
    assert set(others[0]) == {"id", "status", "submitted_at"}

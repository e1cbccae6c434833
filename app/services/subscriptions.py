"""Subscription plans, enrollment and per-period credit accrual.

Each billing period is paid by one Stripe payment (intent or invoice). Accrual is keyed on
that payment reference through the same completed-Transaction guard as credit purchases,
so a period is credited once however many times its payment is reported.
"""

import calendar
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Set
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, InvalidStateTransitionError, NotFoundError
from app.core.logging import get_logger
from app.core.security import Principal
from app.models.subscription_plan import SubscriptionPlan
from app.models.user import SubscriptionEnrollment, User
from app.services import payments as payments_service
from app.services.stripe_processor import PaymentInfo, PaymentProcessor

log = get_logger(__name__)

PLAN_FIELDS = ("name", "description", "price", "currency", "billing_period", "credits_per_period", "benefits", "is_active", "display_order")


def add_period(start: datetime, billing_period: str) -> datetime:
    """start + one month or year, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    if billing_period == "year":
        year, month = start.year + 1, start.month
    else:
        year, month = (start.year + 1, 1) if start.month == 12 else (start.year, start.month + 1)
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# --- plans -----------------------------------------------------------------

async def list_plans(include_inactive: bool = False) -> list[SubscriptionPlan]:
    filters = [] if include_inactive else [SubscriptionPlan.is_active == True]  # noqa: E712
    return await SubscriptionPlan.find(*filters).sort(+SubscriptionPlan.display_order, +SubscriptionPlan.price).to_list()


async def get_plan_or_404(plan_id: PydanticObjectId) -> SubscriptionPlan:
    plan = await SubscriptionPlan.get(plan_id)
    if not plan:
        raise NotFoundError("Subscription plan not found")
    return plan


async def create_plan(principal: Principal, data: dict[str, Any]) -> SubscriptionPlan:
    plan = SubscriptionPlan(**data)
    try:
        await plan.insert()
    except DuplicateKeyError:
        raise ConflictError("A plan with this name already exists")
    await log_event(principal.user_id, "plan_created", "subscription_plan", str(plan.id), {"name": plan.name})
    return plan


async def update_plan(principal: Principal, plan_id: PydanticObjectId, data: dict[str, Any]) -> SubscriptionPlan:
    plan = await get_plan_or_404(plan_id)
    for key, value in data.items():
        if key in PLAN_FIELDS:
            setattr(plan, key, value)
    plan.updated_at = datetime.utcnow()
    try:
        await plan.save()
    except DuplicateKeyError:
        raise ConflictError("A plan with this name already exists")
    await log_event(principal.user_id, "plan_updated", "subscription_plan", str(plan.id), {"fields": sorted(data)})
    return plan


async def deactivate_plan(principal: Principal, plan_id: PydanticObjectId) -> SubscriptionPlan:
    """Plans are never hard-deleted; enrollments keep pointing at them."""
    plan = await get_plan_or_404(plan_id)
    plan.is_active = False
    plan.updated_at = datetime.utcnow()
    await plan.save()
    await log_event(principal.user_id, "plan_deactivated", "subscription_plan", str(plan.id))
    return plan


def plan_to_dict(plan: SubscriptionPlan) -> dict[str, Any]:
    return {
        "id": str(plan.id),
        "name": plan.name,
        "description": plan.description,
        "price": plan.price,
        "currency": plan.currency,
        "billing_period": plan.billing_period,
        "credits_per_period": plan.credits_per_period,
        "benefits": plan.benefits,
        "is_active": plan.is_active,
        "display_order": plan.display_order,
    }


# --- enrollment ------------------------------------------------------------

async def _get_user(user_id: PydanticObjectId) -> User:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def _save_enrollment(user: User, expected_status: list[str] | None = None, **fields: Any) -> User:
    """Write only the enrollment (plus ``fields``); the rest of the user document is left alone.

    With ``expected_status`` the write is conditional on the stored enrollment status.
    """
    filters: list[Any] = [User.id == user.id]
    if expected_status is not None:
        filters.append({"subscription.status": {"$in": expected_status}})
    enrollment = user.subscription.model_dump() if user.subscription else None
    updated = await User.find_one(*filters).update(
        Set({"subscription": enrollment, "updated_at": datetime.utcnow(), **fields}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        current = await _get_user(user.id)
        status = current.subscription.status if current.subscription else "none"
        target = user.subscription.status if user.subscription else None
        raise InvalidStateTransitionError("subscription", status, expected_status or [], target)
    return updated


def _is_current(enrollment: SubscriptionEnrollment | None, now: datetime) -> bool:
    return bool(
        enrollment
        and enrollment.status == "active"
        and enrollment.end_date is not None
        and enrollment.end_date > now
    )


async def subscription_view(user: User) -> dict[str, Any]:
    enrollment = user.subscription
    if not enrollment:
        return {"has_subscription": False, "subscription": None}
    plan = await SubscriptionPlan.get(enrollment.plan_id)
    return {
        "has_subscription": True,
        "subscription": {
            **enrollment.model_dump(mode="json"),
            "plan_id": str(enrollment.plan_id),
            "plan": plan_to_dict(plan) if plan else None,
        },
    }


async def get_subscription(principal: Principal) -> dict[str, Any]:
    return await subscription_view(await _get_user(PydanticObjectId(principal.user_id)))


async def create_subscription_payment(principal: Principal, plan_id: PydanticObjectId, processor: PaymentProcessor) -> dict[str, Any]:
    if principal.role != "tradesperson":
        raise ForbiddenError("Only tradespeople can subscribe")
    user = await _get_user(PydanticObjectId(principal.user_id))
    if _is_current(user.subscription, datetime.utcnow()):
        raise BadRequestError("You already have an active subscription")
    plan = await get_plan_or_404(plan_id)
    if not plan.is_active:
        raise BadRequestError("This plan is no longer available")
    handle = await processor.create_payment(
        round(plan.price * 100),
        plan.currency,
        {
            "user_id": principal.user_id,
            "plan_id": str(plan.id),
            "is_subscription": "true",
            "billing_period": plan.billing_period,
            "credits": str(plan.credits_per_period),
        },
    )
    log.info("subscription_payment_created", payment_ref=handle.ref, plan_id=str(plan.id))
    return {"client_secret": handle.client_secret, "payment_ref": handle.ref, "plan": plan_to_dict(plan)}


async def activate_from_payment(user_id: PydanticObjectId, payment: PaymentInfo) -> dict[str, Any]:
    """Start (or restart) the enrollment paid by ``payment`` and accrue its first period."""
    user = await _get_user(user_id)
    existing = await payments_service.find_completed(payment.ref)
    if existing:
        accrual = {
            "accrued": False,
            "already_processed": True,
            "credits": existing.amount,
            "transaction_id": str(existing.id),
        }
        view = await subscription_view(user)
        return {"success": True, "already_processed": True, "credits": existing.amount, "accrual": accrual, **view}
    try:
        plan = await get_plan_or_404(PydanticObjectId(payment.metadata.get("plan_id")))
    except (InvalidId, TypeError):
        raise BadRequestError("Invalid plan information")
    now = datetime.utcnow()
    previous = user.subscription
    user.subscription = SubscriptionEnrollment(
        plan_id=plan.id,
        status="active",
        start_date=now,
        end_date=add_period(now, plan.billing_period),
        auto_renew=True,
        stripe_subscription_id=previous.stripe_subscription_id if previous else None,
    )
    await _save_enrollment(user)
    accrual = await accrue_if_due(user.id, payment.ref, price=payment.amount / 100)
    await log_event(str(user.id), "subscription_activated", "subscription", str(plan.id), {"payment_ref": payment.ref})
    log.info("subscription_activated", plan_id=str(plan.id), already_processed=accrual["already_processed"])
    view = await subscription_view(await _get_user(user_id))
    return {
        "success": True,
        "already_processed": accrual["already_processed"],
        "credits": accrual["credits"],
        "accrual": accrual,
        **view,
    }


async def accrue_if_due(
    user_id: PydanticObjectId,
    payment_ref: str,
    price: float = 0.0,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Grant the plan's credits for the period paid by ``payment_ref``, at most once."""
    now = now or datetime.utcnow()
    user = await _get_user(user_id)
    enrollment = user.subscription
    if not _is_current(enrollment, now):
        log.info("accrual_skipped", user_id=str(user_id), payment_ref=payment_ref)
        return {"accrued": False, "already_processed": False, "credits": 0, "reason": "no active subscription"}
    plan = await get_plan_or_404(enrollment.plan_id)
    txn, already = await payments_service.settle_payment(
        user.id,
        payment_ref,
        credits=plan.credits_per_period,
        price=price,
        currency=plan.currency,
        description=f"{plan.credits_per_period} credits from {plan.name} subscription",
        metadata={
            "plan_id": str(plan.id),
            "period_start": enrollment.start_date.isoformat() if enrollment.start_date else None,
            "period_end": enrollment.end_date.isoformat(),
        },
        related_to=plan.id,
        related_model="Subscription",
        ledger_related_model="Subscription",
    )
    return {
        "accrued": not already,
        "already_processed": already,
        "credits": txn.amount,
        "transaction_id": str(txn.id),
    }


async def cancel(principal: Principal, processor: PaymentProcessor) -> dict[str, Any]:
    """Stop renewal; credits already granted stay and the period runs to its end date."""
    user = await _get_user(PydanticObjectId(principal.user_id))
    enrollment = user.subscription
    if not enrollment:
        raise NotFoundError("No subscription found")
    if enrollment.status not in ("active", "past_due"):
        raise InvalidStateTransitionError("subscription", enrollment.status, ["active", "past_due"], "canceled")
    if enrollment.stripe_subscription_id:
        await processor.cancel_at_period_end(enrollment.stripe_subscription_id, True)
    enrollment.status = "canceled"
    enrollment.auto_renew = False
    user = await _save_enrollment(user, expected_status=["active", "past_due"])
    await log_event(principal.user_id, "subscription_canceled", "subscription", str(enrollment.plan_id))
    return await subscription_view(user)


async def reactivate(principal: Principal, processor: PaymentProcessor) -> dict[str, Any]:
    user = await _get_user(PydanticObjectId(principal.user_id))
    enrollment = user.subscription
    if not enrollment:
        raise NotFoundError("No subscription found")
    if enrollment.status != "canceled":
        raise InvalidStateTransitionError("subscription", enrollment.status, ["canceled"], "active")
    if enrollment.stripe_subscription_id:
        await processor.cancel_at_period_end(enrollment.stripe_subscription_id, False)
    enrollment.status = "active"
    enrollment.auto_renew = True
    user = await _save_enrollment(user, expected_status=["canceled"])
    await log_event(principal.user_id, "subscription_reactivated", "subscription", str(enrollment.plan_id))
    return await subscription_view(user)


async def expire_lapsed_subscriptions(now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    result = await User.find(
        {
            "subscription.status": {"$in": ["active", "canceled", "past_due"]},
            "subscription.end_date": {"$lt": now},
        }
    ).update({"$set": {"subscription.status": "expired", "subscription.auto_renew": False, "updated_at": now}})
    count = getattr(result, "modified_count", 0) if result is not None else 0
    if count:
        log.info("subscriptions_expired", count=count)
    return count


# --- Stripe webhook handlers -------------------------------------------------

async def _user_by_stripe_subscription(stripe_subscription_id: str | None) -> User | None:
    if not stripe_subscription_id:
        return None
    user = await User.find_one({"subscription.stripe_subscription_id": stripe_subscription_id})
    if not user:
        log.warning("stripe_subscription_unknown", stripe_subscription_id=stripe_subscription_id)
    return user


def _epoch(value: Any) -> datetime | None:
    return datetime.utcfromtimestamp(value) if value else None


async def attach_stripe_subscription(obj: dict[str, Any]) -> None:
    """customer.subscription.created: link the Stripe subscription to the user's enrollment."""
    user_id = (obj.get("metadata") or {}).get("user_id")
    try:
        user = await User.get(PydanticObjectId(user_id))
    except (InvalidId, TypeError):
        user = None
    if not user or not user.subscription:
        log.warning("stripe_subscription_unmatched", stripe_subscription_id=obj.get("id"))
        return
    user.subscription.stripe_subscription_id = obj.get("id")
    extra = {"stripe_customer_id": obj["customer"]} if obj.get("customer") else {}
    await _save_enrollment(user, **extra)
    log.info("stripe_subscription_attached", stripe_subscription_id=obj.get("id"))


async def renew_from_invoice(invoice: dict[str, Any]) -> None:
    """invoice.payment_succeeded on a renewal: extend the period, then accrue once per invoice."""
    if invoice.get("billing_reason") != "subscription_cycle":
        return
    user = await _user_by_stripe_subscription(invoice.get("subscription"))
    if not user or not user.subscription:
        return
    enrollment = user.subscription
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    now = datetime.utcnow()
    plan = await get_plan_or_404(enrollment.plan_id)
    start = enrollment.end_date if enrollment.end_date and enrollment.end_date > now else now
    enrollment.start_date = _epoch(period.get("start")) or start
    enrollment.end_date = _epoch(period.get("end")) or add_period(start, plan.billing_period)
    enrollment.status = "active"
    await _save_enrollment(user)
    await accrue_if_due(user.id, invoice["id"], price=(invoice.get("amount_paid") or 0) / 100)


async def mark_past_due(invoice: dict[str, Any]) -> None:
    user = await _user_by_stripe_subscription(invoice.get("subscription"))
    if not user or not user.subscription:
        return
    user.subscription.status = "past_due"
    await _save_enrollment(user)
    log.info("subscription_past_due", user_id=str(user.id))


async def sync_from_stripe(obj: dict[str, Any]) -> None:
    """customer.subscription.updated: mirror status, auto-renew and period end."""
    user = await _user_by_stripe_subscription(obj.get("id"))
    if not user or not user.subscription:
        return
    enrollment = user.subscription
    status = obj.get("status")
    if status == "active":
        enrollment.status = "canceled" if obj.get("cancel_at_period_end") else "active"
    elif status == "past_due":
        enrollment.status = "past_due"
    elif status in ("canceled", "unpaid", "incomplete_expired"):
        enrollment.status = "expired"
    enrollment.auto_renew = not obj.get("cancel_at_period_end", False)
    enrollment.end_date = _epoch(obj.get("current_period_end")) or enrollment.end_date
    await _save_enrollment(user)
    log.info("subscription_synced", user_id=str(user.id), status=enrollment.status)


async def mark_expired_by_stripe_id(obj: dict[str, Any]) -> None:
    """customer.subscription.deleted."""
    user = await _user_by_stripe_subscription(obj.get("id"))
    if not user or not user.subscription:
        return
    user.subscription.status = "expired"
    user.subscription.auto_renew = False
    await _save_enrollment(user)
    log.info("subscription_expired", user_id=str(user.id))

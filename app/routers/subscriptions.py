from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.core.security import Principal
from app.deps import parse_object_id, require_tradesperson
from app.services import payments as payments_service
from app.services import subscriptions as subscriptions_service
from app.services.stripe_processor import PaymentProcessor, get_payment_processor

router = APIRouter()


class SubscriptionPaymentRequest(BaseModel):
    plan_id: str


class SubscriptionConfirmRequest(BaseModel):
    payment_ref: str


class SubscriptionAction(BaseModel):
    action: Literal["cancel", "reactivate"]


@router.get("/plans")
async def plans_list():
    plans = await subscriptions_service.list_plans()
    return {"plans": [subscriptions_service.plan_to_dict(p) for p in plans]}


@router.get("")
async def subscription_get(principal: Principal = Depends(require_tradesperson)):
    return await subscriptions_service.get_subscription(principal)


@router.post("/payment")
async def subscription_payment(
    body: SubscriptionPaymentRequest,
    principal: Principal = Depends(require_tradesperson),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Create the payment intent for a plan's first period."""
    return await subscriptions_service.create_subscription_payment(
        principal, parse_object_id(body.plan_id, "plan id"), processor
    )


@router.post("/confirm")
async def subscription_confirm(
    body: SubscriptionConfirmRequest,
    principal: Principal = Depends(require_tradesperson),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Activate the subscription paid by payment_ref and grant the first period's credits."""
    return await payments_service.confirm(body.payment_ref, principal.user_id, processor)


@router.put("")
async def subscription_update(
    body: SubscriptionAction,
    principal: Principal = Depends(require_tradesperson),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    if body.action == "cancel":
        return await subscriptions_service.cancel(principal, processor)
    return await subscriptions_service.reactivate(principal, processor)

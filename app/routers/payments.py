from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from app.core.security import Principal
from app.deps import require_tradesperson
from app.services import payments as payments_service
from app.services.stripe_processor import PaymentProcessor, get_payment_processor

router = APIRouter()


class CreditPaymentRequest(BaseModel):
    package_id: str


class VerifyPaymentRequest(BaseModel):
    payment_ref: str


@router.post("/credits")
async def credit_payment_create(
    body: CreditPaymentRequest,
    principal: Principal = Depends(require_tradesperson),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Create a Stripe payment intent for a credit package; the client confirms it with Stripe."""
    return await payments_service.create_credit_payment(principal, body.package_id, processor)


@router.post("/credits/verify")
async def credit_payment_verify(
    body: VerifyPaymentRequest,
    principal: Principal = Depends(require_tradesperson),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Apply a succeeded payment's credits. Safe to repeat: replays report already_processed."""
    return await payments_service.confirm(body.payment_ref, principal.user_id, processor)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Stripe webhook: payment and subscription events (idempotent)."""
    body = await request.body()
    return await payments_service.handle_webhook(body, stripe_signature, processor)

"""Payment processor boundary: the Stripe adapter and the interface services depend on.

Stripe's SDK is synchronous, so calls run in a worker thread. Every Stripe exception is
normalized here; nothing from ``stripe`` leaks past this module.
"""

import asyncio
from functools import lru_cache
from typing import Any, Protocol

import stripe
from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, PaymentNotFoundError, PaymentProcessorError
from app.core.logging import get_logger

log = get_logger(__name__)


class PaymentInfo(BaseModel):
    ref: str
    status: str
    owner_ref: str | None = None  # our user id, as stored in the payment metadata
    amount: int = 0  # minor units
    currency: str = "usd"
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentHandle(BaseModel):
    ref: str
    client_secret: str


class PaymentProcessor(Protocol):
    async def retrieve_payment(self, ref: str) -> PaymentInfo: ...

    async def create_payment(self, amount: int, currency: str, metadata: dict[str, str]) -> PaymentHandle: ...

    async def cancel_at_period_end(self, stripe_subscription_id: str, cancel: bool) -> None: ...

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]: ...


async def _run_stripe(func, *args, **kwargs) -> Any:
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except stripe.StripeError as e:
        log.error(
            "stripe_api_error",
            error_type=type(e).__name__,
            error_code=getattr(e, "code", None),
            error_message=str(e),
        )
        raise


class StripeProcessor:
    def __init__(self, api_key: str, webhook_secret: str = ""):
        self._client_key = api_key
        self._webhook_secret = webhook_secret

    async def retrieve_payment(self, ref: str) -> PaymentInfo:
        try:
            intent = await _run_stripe(stripe.PaymentIntent.retrieve, ref, api_key=self._client_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise PaymentNotFoundError(ref) from e
            raise PaymentProcessorError(str(e.user_message or e)) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(str(e.user_message or "Payment processor error")) from e
        return payment_info_from_intent(intent)

    async def create_payment(self, amount: int, currency: str, metadata: dict[str, str]) -> PaymentHandle:
        try:
            intent = await _run_stripe(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self._client_key,
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(str(e.user_message or "Payment processing error")) from e
        return PaymentHandle(ref=intent["id"], client_secret=intent["client_secret"])

    async def cancel_at_period_end(self, stripe_subscription_id: str, cancel: bool) -> None:
        try:
            await _run_stripe(
                stripe.Subscription.modify,
                stripe_subscription_id,
                cancel_at_period_end=cancel,
                api_key=self._client_key,
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(str(e.user_message or "Payment processor error")) from e

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        if not self._webhook_secret:
            raise BadRequestError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise BadRequestError("Invalid webhook signature") from e
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)


def payment_info_from_intent(intent: Any) -> PaymentInfo:
    """Map a Stripe PaymentIntent (object or plain dict) to PaymentInfo."""
    data = intent.to_dict() if hasattr(intent, "to_dict") else dict(intent)
    metadata = data.get("metadata") or {}
    metadata = {k: str(v) for k, v in dict(metadata).items()}
    return PaymentInfo(
        ref=data["id"],
        status=data.get("status") or "unknown",
        owner_ref=metadata.get("user_id"),
        amount=data.get("amount") or 0,
        currency=data.get("currency") or "usd",
        metadata=metadata,
    )


@lru_cache
def get_payment_processor() -> PaymentProcessor:
    settings = get_settings()
    if not settings.stripe_secret_key:
        log.warning("stripe_not_configured")
    return StripeProcessor(settings.stripe_secret_key, settings.stripe_webhook_secret)

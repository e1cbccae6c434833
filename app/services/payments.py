"""Credit purchases through Stripe: payment intents, idempotent confirmation, webhooks.

A confirmed payment turns into exactly one completed ``Transaction`` plus one ledger
credit. The Transaction's unique ``idempotency_key`` (the payment reference) is the guard:
whichever confirmation inserts it first credits the ledger; every other attempt, whether a
retry, a double click or a webhook redelivery, reads the winner back and reports
``already_processed``.
"""

from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    BadRequestError,
    ForbiddenError,
    OwnerMismatchError,
    PaymentNotSucceededError,
)
from app.core.logging import get_logger
from app.core.security import Principal
from app.db.init import transaction
from app.models.transaction import Transaction
from app.services import ledger
from app.services.stripe_processor import PaymentInfo, PaymentProcessor, payment_info_from_intent

log = get_logger(__name__)

CREDIT_PACKAGES: dict[str, dict[str, Any]] = {
    "basic": {"name": "Basic Credits Package", "credits": 10, "price": 9.99},
    "standard": {"name": "Standard Credits Package", "credits": 25, "price": 19.99},
    "premium": {"name": "Premium Credits Package", "credits": 60, "price": 39.99},
}


def list_packages() -> list[dict[str, Any]]:
    return [{"id": key, **pkg} for key, pkg in CREDIT_PACKAGES.items()]


async def find_completed(payment_ref: str) -> Transaction | None:
    return await Transaction.find_one(
        Transaction.idempotency_key == payment_ref,
        Transaction.status == "completed",
    )


async def settle_payment(
    user_id: PydanticObjectId,
    payment_ref: str,
    credits: int,
    price: float,
    currency: str,
    description: str,
    metadata: dict[str, Any],
    related_to: PydanticObjectId | None = None,
    related_model: str | None = None,
    ledger_related_model: str = "Transaction",
) -> tuple[Transaction, bool]:
    """Record the completed Transaction for ``payment_ref`` and credit the ledger once.

    Returns ``(transaction, already_processed)``. Ledger entries point at the
    Transaction, or at ``related_to`` when ``ledger_related_model`` names it.
    """
    txn = Transaction(
        user_id=user_id,
        amount=credits,
        price=price,
        currency=currency,
        type="purchase",
        status="completed",
        description=description,
        related_to=related_to,
        related_model=related_model,
        metadata={**metadata, "payment_ref": payment_ref},
        idempotency_key=payment_ref,
    )
    try:
        async with transaction() as session:
            await txn.insert(session=session)
            ledger_ref = txn.id if ledger_related_model == "Transaction" else related_to
            try:
                await ledger.credit(
                    user_id,
                    credits,
                    "purchase",
                    related_to=ledger_ref,
                    related_model=ledger_related_model,
                    notes=description,
                    session=session,
                )
            except Exception:
                if session is None:
                    # No transaction to abort: undo the record so a retry can settle it.
                    await txn.delete()
                raise
    except DuplicateKeyError:
        existing = await find_completed(payment_ref)
        if existing is None:
            raise
        log.info("payment_already_settled", payment_ref=payment_ref, transaction_id=str(existing.id))
        return existing, True
    await log_event(
        str(user_id),
        "payment_settled",
        "payment",
        payment_ref,
        {"credits": credits, "price": price, "transaction_id": str(txn.id)},
    )
    log.info("payment_settled", payment_ref=payment_ref, user_id=str(user_id), credits=credits)
    return txn, False


def _transaction_view(txn: Transaction) -> dict[str, Any]:
    return {"id": str(txn.id), "amount": txn.amount, "date": txn.created_at.isoformat()}


async def create_credit_payment(principal: Principal, package_id: str, processor: PaymentProcessor) -> dict[str, Any]:
    """Create a payment intent for a credit package; the client completes it with Stripe."""
    if principal.role != "tradesperson":
        raise ForbiddenError("Only tradespeople can purchase credits")
    package = CREDIT_PACKAGES.get(package_id)
    if not package:
        raise BadRequestError("Invalid package selected")
    handle = await processor.create_payment(
        round(package["price"] * 100),
        get_settings().stripe_currency,
        {"user_id": principal.user_id, "package_id": package_id, "credits": str(package["credits"])},
    )
    log.info("credit_payment_created", payment_ref=handle.ref, package_id=package_id)
    return {
        "client_secret": handle.client_secret,
        "payment_ref": handle.ref,
        "package": {"id": package_id, **package},
    }


async def apply_package_payment(user_id: PydanticObjectId, payment: PaymentInfo) -> dict[str, Any]:
    existing = await find_completed(payment.ref)
    if existing:
        return await _confirm_result(existing, already_processed=True)
    package_id = payment.metadata.get("package_id")
    package = CREDIT_PACKAGES.get(package_id or "")
    if not package:
        raise BadRequestError("Invalid package information")
    try:
        credits = int(payment.metadata.get("credits") or package["credits"])
    except ValueError:
        credits = package["credits"]
    txn, already = await settle_payment(
        user_id,
        payment.ref,
        credits=credits,
        price=payment.amount / 100,
        currency=payment.currency,
        description=f"Purchased {credits} credits",
        metadata={"package_id": package_id},
        related_model="CreditPackage",
    )
    return await _confirm_result(txn, already_processed=already)


async def _confirm_result(txn: Transaction, already_processed: bool) -> dict[str, Any]:
    return {
        "success": True,
        "already_processed": already_processed,
        "credits": txn.amount,
        "credits_available": await ledger.get_balance(txn.user_id),
        "transaction": _transaction_view(txn),
    }


async def apply_verified_payment(user_id: PydanticObjectId, payment: PaymentInfo) -> dict[str, Any]:
    """Route a succeeded, owner-checked payment to the package or subscription path."""
    if payment.metadata.get("is_subscription") == "true":
        from app.services import subscriptions as subscriptions_service
        return await subscriptions_service.activate_from_payment(user_id, payment)
    return await apply_package_payment(user_id, payment)


async def confirm(payment_ref: str, expected_user_id: str, processor: PaymentProcessor) -> dict[str, Any]:
    """Verify ``payment_ref`` with the processor and apply its credits exactly once."""
    if not payment_ref:
        raise BadRequestError("Missing payment reference")
    payment = await processor.retrieve_payment(payment_ref)
    if payment.status != "succeeded":
        raise PaymentNotSucceededError(payment_ref, payment.status)
    if payment.owner_ref != expected_user_id:
        log.warning("payment_owner_mismatch", payment_ref=payment_ref, owner_ref=payment.owner_ref)
        raise OwnerMismatchError()
    return await apply_verified_payment(PydanticObjectId(expected_user_id), payment)


async def record_failed_payment(payment: PaymentInfo) -> bool:
    """Store a failed payment once per reference. Returns False on redelivery."""
    try:
        user_id = PydanticObjectId(payment.owner_ref)
    except (InvalidId, TypeError):
        log.warning("failed_payment_without_user", payment_ref=payment.ref)
        return False
    try:
        credits = int(payment.metadata.get("credits") or 0)
    except ValueError:
        credits = 0
    try:
        await Transaction(
            user_id=user_id,
            amount=credits,
            price=payment.amount / 100,
            currency=payment.currency,
            type="purchase",
            status="failed",
            description=f"Failed purchase of {credits} credits",
            metadata={**payment.metadata, "payment_ref": payment.ref},
            idempotency_key=f"failed:{payment.ref}",
        ).insert()
    except DuplicateKeyError:
        return False
    log.info("payment_failed_recorded", payment_ref=payment.ref, user_id=str(user_id))
    return True


async def _on_payment_intent_succeeded(obj: dict[str, Any]) -> None:
    payment = payment_info_from_intent(obj)
    try:
        user_id = PydanticObjectId(payment.owner_ref)
    except (InvalidId, TypeError):
        log.warning("payment_without_user", payment_ref=payment.ref)
        return
    result = await apply_verified_payment(user_id, payment)
    log.info("webhook_payment_applied", payment_ref=payment.ref, already_processed=result.get("already_processed"))


async def handle_webhook(payload: bytes, signature: str, processor: PaymentProcessor) -> dict[str, Any]:
    """Verify the Stripe signature and dispatch the event. Handlers are idempotent."""
    from app.services import subscriptions as subscriptions_service

    event = processor.construct_event(payload, signature)
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    log.info("stripe_webhook", event_type=event_type, event_id=event.get("id"))
    handlers = {
        "payment_intent.succeeded": _on_payment_intent_succeeded,
        "payment_intent.payment_failed": lambda o: record_failed_payment(payment_info_from_intent(o)),
        "customer.subscription.created": subscriptions_service.attach_stripe_subscription,
        "customer.subscription.updated": subscriptions_service.sync_from_stripe,
        "customer.subscription.deleted": subscriptions_service.mark_expired_by_stripe_id,
        "invoice.payment_succeeded": subscriptions_service.renew_from_invoice,
        "invoice.payment_failed": subscriptions_service.mark_past_due,
    }
    handler = handlers.get(event_type)
    if handler is None:
        log.info("stripe_webhook_ignored", event_type=event_type)
        return {"received": True}
    try:
        await handler(obj)
    except AppError as e:
        # Business rejection: redelivery would fail the same way, so acknowledge it.
        log.warning("stripe_webhook_rejected", event_type=event_type, code=e.code, message=e.message)
        return {"received": True, "warning": e.message}
    return {"received": True}

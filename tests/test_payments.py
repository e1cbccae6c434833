"""Payment confirmation: exactly-once credit, ownership, processor failures, webhooks."""

import asyncio
import json

import pytest

from app.core.exceptions import (
    BadRequestError,
    OwnerMismatchError,
    PaymentNotFoundError,
    PaymentNotSucceededError,
    PaymentProcessorError,
)
from app.models.transaction import Transaction
from app.services import ledger
from app.services import payments as payments_service


async def test_confirm_credits_package_amount(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_1", user.id, package_id="standard", credits=25)
    result = await payments_service.confirm("pi_1", str(user.id), processor)
    assert result["success"] is True
    assert result["already_processed"] is False
    assert result["credits"] == 25
    assert result["credits_available"] == 25
    txn = await Transaction.find_one(Transaction.idempotency_key == "pi_1")
    assert txn.status == "completed"
    assert txn.metadata["payment_ref"] == "pi_1"
    account = await ledger.get_account(user.id)
    assert account.history[0].transaction_type == "purchase"
    assert account.history[0].related_to == txn.id
    assert account.history[0].related_model == "Transaction"


async def test_credits_fall_back_to_package_when_metadata_missing(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_pkg", user.id, package_id="premium")
    result = await payments_service.confirm("pi_pkg", str(user.id), processor)
    assert result["credits"] == 60


async def test_second_confirm_is_reported_as_already_processed(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_2", user.id, package_id="basic", credits=10)
    first = await payments_service.confirm("pi_2", str(user.id), processor)
    second = await payments_service.confirm("pi_2", str(user.id), processor)
    assert first["already_processed"] is False
    assert second["already_processed"] is True
    assert second["credits"] == first["credits"] == 10
    assert await ledger.get_balance(user.id) == 10


async def test_concurrent_confirms_credit_once(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_123", user.id, package_id="basic", credits=10)
    results = await asyncio.gather(
        payments_service.confirm("pi_123", str(user.id), processor),
        payments_service.confirm("pi_123", str(user.id), processor),
    )
    assert all(r["success"] for r in results)
    assert sorted(r["already_processed"] for r in results) == [False, True]
    assert await Transaction.find({"metadata.payment_ref": "pi_123"}).count() == 1
    account = await ledger.get_account(user.id)
    assert account.available == 10
    assert len(account.history) == 1


async def test_payment_not_succeeded(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_3", user.id, status="processing", package_id="basic")
    with pytest.raises(PaymentNotSucceededError):
        await payments_service.confirm("pi_3", str(user.id), processor)
    assert await ledger.get_balance(user.id) == 0


async def test_payment_not_found(make_user, processor):
    user = await make_user()
    with pytest.raises(PaymentNotFoundError):
        await payments_service.confirm("pi_missing", str(user.id), processor)


async def test_owner_mismatch(make_user, processor):
    owner = await make_user()
    other = await make_user()
    processor.add_payment("pi_4", owner.id, package_id="basic")
    with pytest.raises(OwnerMismatchError):
        await payments_service.confirm("pi_4", str(other.id), processor)
    assert await Transaction.find_all().count() == 0


async def test_processor_failure_leaves_no_ledger_state(make_user, processor):
    user = await make_user()

    async def broken(ref):
        raise PaymentProcessorError()

    processor.retrieve_payment = broken
    with pytest.raises(PaymentProcessorError):
        await payments_service.confirm("pi_5", str(user.id), processor)
    assert await Transaction.find_all().count() == 0
    assert await ledger.get_balance(user.id) == 0


async def test_failed_ledger_credit_removes_transaction(make_user, processor, monkeypatch):
    user = await make_user()
    processor.add_payment("pi_6", user.id, package_id="basic", credits=10)

    async def failing_credit(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(ledger, "credit", failing_credit)
    with pytest.raises(RuntimeError):
        await payments_service.confirm("pi_6", str(user.id), processor)
    assert await Transaction.find_one(Transaction.idempotency_key == "pi_6") is None

    monkeypatch.undo()
    result = await payments_service.confirm("pi_6", str(user.id), processor)
    assert result["already_processed"] is False
    assert await ledger.get_balance(user.id) == 10


async def test_invalid_package_is_rejected(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_7", user.id, package_id="platinum")
    with pytest.raises(BadRequestError):
        await payments_service.confirm("pi_7", str(user.id), processor)


async def test_create_credit_payment_uses_package_price(make_user, principal_of, processor):
    user = await make_user()
    out = await payments_service.create_credit_payment(principal_of(user), "standard", processor)
    assert out["client_secret"].startswith(out["payment_ref"])
    created = processor.created[0]
    assert created["amount"] == 1999
    assert created["metadata"] == {"user_id": str(user.id), "package_id": "standard", "credits": "25"}


async def test_failed_payment_recorded_once(make_user, processor):
    user = await make_user()
    info = processor.add_payment("pi_8", user.id, status="requires_payment_method", package_id="basic", credits=10)
    assert await payments_service.record_failed_payment(info) is True
    assert await payments_service.record_failed_payment(info) is False
    txn = await Transaction.find_one(Transaction.idempotency_key == "failed:pi_8")
    assert txn.status == "failed"
    assert await ledger.get_balance(user.id) == 0


def _event(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


async def test_webhook_redelivery_credits_once(make_user, processor):
    user = await make_user()
    intent = {
        "id": "pi_9",
        "status": "succeeded",
        "amount": 999,
        "currency": "usd",
        "metadata": {"user_id": str(user.id), "package_id": "basic", "credits": "10"},
    }
    for _ in range(3):
        out = await payments_service.handle_webhook(_event("payment_intent.succeeded", intent), "valid", processor)
        assert out["received"] is True
    assert await ledger.get_balance(user.id) == 10


async def test_webhook_and_client_confirm_credit_once(make_user, processor):
    user = await make_user()
    processor.add_payment("pi_10", user.id, package_id="basic", credits=10)
    intent = {"id": "pi_10", "status": "succeeded", "amount": 999, "metadata": {"user_id": str(user.id), "package_id": "basic", "credits": "10"}}
    await payments_service.handle_webhook(_event("payment_intent.succeeded", intent), "valid", processor)
    result = await payments_service.confirm("pi_10", str(user.id), processor)
    assert result["already_processed"] is True
    assert await ledger.get_balance(user.id) == 10


async def test_webhook_bad_signature(processor):
    with pytest.raises(BadRequestError):
        await payments_service.handle_webhook(_event("payment_intent.succeeded", {}), "forged", processor)


async def test_webhook_ignores_unknown_events(processor):
    out = await payments_service.handle_webhook(_event("charge.refunded", {"id": "ch_1"}), "valid", processor)
    assert out == {"received": True}


async def test_webhook_acknowledges_business_rejections(make_user, processor):
    user = await make_user()
    intent = {"id": "pi_11", "status": "succeeded", "amount": 999, "metadata": {"user_id": str(user.id), "package_id": "nope"}}
    out = await payments_service.handle_webhook(_event("payment_intent.succeeded", intent), "valid", processor)
    assert out["received"] is True
    assert "warning" in out
    assert await ledger.get_balance(user.id) == 0

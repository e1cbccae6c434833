"""Credit ledger: the only sanctioned way to change a tradesperson's balance.

Balance, lifetime spend and history live in one ``CreditAccount`` document, so every
credit or debit is a single atomic ``find_one_and_update``: the counters move and the
entry is pushed together or not at all. Debits are filtered on ``available >= amount``,
which serializes concurrent debits on the same account at the storage layer.
"""

from datetime import datetime

from beanie import PydanticObjectId, UpdateResponse
from beanie.operators import Inc, Push, Set
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import BadRequestError, InsufficientCreditsError
from app.core.logging import get_logger
from app.models.credit_account import TRANSACTION_TYPES, CreditAccount, LedgerEntry

log = get_logger(__name__)


def _validate(amount: int, transaction_type: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequestError("Credit amount must be a positive integer")
    if transaction_type not in TRANSACTION_TYPES:
        raise BadRequestError(f"Invalid transaction type: {transaction_type}")


async def ensure_account(user_id: PydanticObjectId, session=None) -> CreditAccount:
    """Return the user's account, creating an empty one if missing."""
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id, session=session)
    if account:
        return account
    try:
        account = CreditAccount(user_id=user_id)
        await account.insert(session=session)
        return account
    except DuplicateKeyError:
        # Lost the creation race; the other request's account is the one.
        return await CreditAccount.find_one(CreditAccount.user_id == user_id, session=session)


async def get_account(user_id: PydanticObjectId, session=None) -> CreditAccount:
    """Return the account, or an unsaved zero-balance view when none exists yet."""
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id, session=session)
    return account or CreditAccount(user_id=user_id)


async def get_balance(user_id: PydanticObjectId) -> int:
    return (await get_account(user_id)).available


async def credit(
    user_id: PydanticObjectId,
    amount: int,
    transaction_type: str,
    related_to: PydanticObjectId | None = None,
    related_model: str | None = None,
    notes: str = "",
    session=None,
) -> CreditAccount:
    """Add ``amount`` credits and append the matching entry. Returns the updated account."""
    _validate(amount, transaction_type)
    await ensure_account(user_id, session=session)
    entry = LedgerEntry(
        amount=amount,
        transaction_type=transaction_type,
        related_to=related_to,
        related_model=related_model,
        notes=notes,
    )
    account = await CreditAccount.find_one(CreditAccount.user_id == user_id, session=session).update(
        Inc({CreditAccount.available: amount}),
        Push({CreditAccount.history: entry.model_dump()}),
        Set({CreditAccount.updated_at: datetime.utcnow()}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if account is None:
        raise RuntimeError(f"credit account for {user_id} vanished during credit")
    log.info(
        "ledger_credit",
        user_id=str(user_id),
        amount=amount,
        transaction_type=transaction_type,
        available=account.available,
    )
    return account


async def debit(
    user_id: PydanticObjectId,
    amount: int,
    transaction_type: str,
    related_to: PydanticObjectId | None = None,
    related_model: str | None = None,
    notes: str = "",
    session=None,
) -> CreditAccount:
    """Remove ``amount`` credits, failing closed with InsufficientCreditsError."""
    _validate(amount, transaction_type)
    entry = LedgerEntry(
        amount=-amount,
        transaction_type=transaction_type,
        related_to=related_to,
        related_model=related_model,
        notes=notes,
    )
    account = await CreditAccount.find_one(
        CreditAccount.user_id == user_id,
        CreditAccount.available >= amount,
        session=session,
    ).update(
        Inc({CreditAccount.available: -amount, CreditAccount.spent: amount}),
        Push({CreditAccount.history: entry.model_dump()}),
        Set({CreditAccount.updated_at: datetime.utcnow()}),
        session=session,
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if account is None:
        available = (await get_account(user_id, session=session)).available
        log.info("ledger_debit_refused", user_id=str(user_id), amount=amount, available=available)
        raise InsufficientCreditsError(required=amount, available=available)
    log.info(
        "ledger_debit",
        user_id=str(user_id),
        amount=amount,
        transaction_type=transaction_type,
        available=account.available,
    )
    return account


async def history(user_id: PydanticObjectId, limit: int = 50) -> list[LedgerEntry]:
    """Most recent ``limit`` entries, newest first."""
    if limit <= 0:
        return []
    account = await get_account(user_id)
    return list(reversed(account.history[-limit:]))


def entry_to_dict(entry: LedgerEntry) -> dict:
    return {
        "amount": entry.amount,
        "transaction_type": entry.transaction_type,
        "related_to": str(entry.related_to) if entry.related_to else None,
        "related_model": entry.related_model,
        "date": entry.date.isoformat(),
        "notes": entry.notes,
    }

from contextlib import asynccontextmanager
from typing import AsyncIterator

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.application import Application
from app.models.audit_log import AuditLog
from app.models.credit_account import CreditAccount
from app.models.failed_job import FailedJob
from app.models.job import Job
from app.models.message import Message
from app.models.review import Review
from app.models.subscription_plan import SubscriptionPlan
from app.models.transaction import Transaction
from app.models.user import User

log = get_logger(__name__)

DOCUMENT_MODELS = [
    User,
    CreditAccount,
    Transaction,
    Job,
    Application,
    Message,
    SubscriptionPlan,
    Review,
    AuditLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def _build_client() -> AsyncIOMotorClient:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(settings.mongodb_uri, **kwargs)


async def init_db(client: AsyncIOMotorClient | None = None) -> AsyncIOMotorDatabase:
    """Open the persistence handle once per process and register document models.

    Tests and the worker pass their own client; the API builds one from settings.
    """
    global _client
    settings = get_settings()
    _client = client if client is not None else _build_client()
    database = _client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    log.info("db_initialized", db=settings.mongodb_db_name, transactions=settings.mongodb_transactions)
    return database


def get_client() -> AsyncIOMotorClient:
    if _client is None:
        raise RuntimeError("init_db() has not been called")
    return _client


def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


@asynccontextmanager
async def transaction() -> AsyncIterator:
    """Yield a session inside a started multi-document transaction, or None when disabled.

    Leaving the block normally commits; an exception aborts and propagates.
    """
    if not get_settings().mongodb_transactions:
        yield None
        return
    async with await get_client().start_session() as session:
        async with session.start_transaction():
            yield session

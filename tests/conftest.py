import asyncio
import json
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "tradeboard_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")

from app.core.exceptions import BadRequestError, PaymentNotFoundError  # noqa: E402
from app.core.security import Principal, create_session_cookie  # noqa: E402
from app.services.stripe_processor import PaymentHandle, PaymentInfo  # noqa: E402


class FakeProcessor:
    """In-memory stand-in for Stripe. Webhook signature "valid" is accepted."""

    def __init__(self):
        self.payments: dict[str, PaymentInfo] = {}
        self.created: list[dict] = []
        self.cancel_calls: list[tuple[str, bool]] = []
        self.retrieve_calls = 0

    def add_payment(self, ref: str, user_id, status: str = "succeeded", amount: int = 999, **metadata) -> PaymentInfo:
        info = PaymentInfo(
            ref=ref,
            status=status,
            owner_ref=str(user_id) if user_id else None,
            amount=amount,
            currency="usd",
            metadata={"user_id": str(user_id), **{k: str(v) for k, v in metadata.items()}} if user_id else metadata,
        )
        self.payments[ref] = info
        return info

    async def retrieve_payment(self, ref: str) -> PaymentInfo:
        self.retrieve_calls += 1
        await asyncio.sleep(0)
        if ref not in self.payments:
            raise PaymentNotFoundError(ref)
        return self.payments[ref]

    async def create_payment(self, amount: int, currency: str, metadata: dict[str, str]) -> PaymentHandle:
        ref = f"pi_test_{len(self.created) + 1}"
        self.created.append({"ref": ref, "amount": amount, "currency": currency, "metadata": metadata})
        self.payments[ref] = PaymentInfo(
            ref=ref,
            status="requires_payment_method",
            owner_ref=metadata.get("user_id"),
            amount=amount,
            currency=currency,
            metadata=metadata,
        )
        return PaymentHandle(ref=ref, client_secret=f"{ref}_secret")

    async def cancel_at_period_end(self, stripe_subscription_id: str, cancel: bool) -> None:
        self.cancel_calls.append((stripe_subscription_id, cancel))

    def construct_event(self, payload: bytes, signature: str) -> dict:
        if signature != "valid":
            raise BadRequestError("Invalid webhook signature")
        return json.loads(payload)


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database per test."""
    from mongomock_motor import AsyncMongoMockClient
    from app.db.init import init_db
    database = await init_db(AsyncMongoMockClient())
    yield database


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def make_user():
    from app.models.user import User

    counter = {"n": 0}

    async def _make(role: str = "tradesperson", verified: bool = True, **kwargs) -> User:
        counter["n"] += 1
        user = User(
            email=f"{role}{counter['n']}@example.com",
            name=f"{role.title()} {counter['n']}",
            role=role,
            is_verified=verified,
            **kwargs,
        )
        await user.insert()
        return user

    return _make


@pytest.fixture
def principal_of():
    def _principal(user) -> Principal:
        return Principal(user_id=str(user.id), role=user.role)

    return _principal


@pytest.fixture
def make_job():
    from app.models.job import Job, Location

    async def _make(owner, status: str = "open", credit_cost: int = 1, **kwargs) -> Job:
        job = Job(
            title=kwargs.pop("title", "Fix leaking kitchen tap"),
            description="Tap drips constantly, needs new washer",
            category="plumbing",
            location=Location(city="Austin", state="TX", postal_code="78701"),
            customer_id=owner.id,
            status=status,
            credit_cost=credit_cost,
            **kwargs,
        )
        await job.insert()
        return job

    return _make


@pytest.fixture
def fund():
    from app.services import ledger

    async def _fund(user, amount: int):
        return await ledger.credit(user.id, amount, "bonus", notes="test funding")

    return _fund


@pytest.fixture
def auth_headers():
    from app.deps import SESSION_COOKIE_NAME

    def _headers(user) -> dict[str, str]:
        cookie = create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})
        return {"Cookie": f"{SESSION_COOKIE_NAME}={cookie}"}

    return _headers


@pytest_asyncio.fixture
async def client(processor) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    from app.services.stripe_processor import get_payment_processor
    app.dependency_overrides[get_payment_processor] = lambda: processor
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()

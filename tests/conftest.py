"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A scriptable in-memory payment provider
- Test data factories (users, payout accounts, trips)
- A booking flow helper that drives bookings through the real service
"""
# JWT_SECRET_KEY must exist before app is imported: the settings validator requires it with DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import settings
from app.core.exceptions import PaymentProviderError
from app.db.database import Base, get_db
from app.db.models.booking import Booking
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User, UserRole
from app.db.models.user_payment_account import UserPaymentAccount
from app.db.models.verification_code import CodeType
from app.domain.services.booking_service import BookingService
from app.domain.services.payments import (
    BasePaymentProvider,
    ProviderAccount,
    ProviderIntent,
    ProviderRefund,
    ProviderTransfer,
    reset_payment_provider,
    set_payment_provider,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-api-key"
TEST_WEBHOOK_SECRET = "whsec_test_secret"
_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"

# Note: no custom event_loop fixture, pytest-asyncio handles it with
# asyncio_mode=auto and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Payment provider
# ============================================================================

class FakePaymentProvider(BasePaymentProvider):
    """
    In-memory stand-in for the payment provider.

    Honors idempotency keys like the real one: replaying a key returns the
    first answer. Failures are scripted per operation with ``fail``; with
    ``after_apply=True`` the call takes effect before the error is raised,
    which is what a timeout on the way back looks like.
    """

    def __init__(self) -> None:
        self.intents: dict[str, ProviderIntent] = {}
        self.accounts: dict[str, ProviderAccount] = {}
        self.refunds: list[ProviderRefund] = []
        self.transfers: list[ProviderTransfer] = []
        self.calls: list[tuple[str, dict]] = []
        self._replies: dict[str, object] = {}
        self._failures: dict[str, list[tuple[Exception, bool]]] = {}
        self._ids = itertools.count(1)

    @property
    def provider_name(self) -> str:
        return "fake"

    # ── scripting ──

    def fail(self, operation: str, exc: Exception, *, times: int = 1, after_apply: bool = False) -> None:
        self._failures.setdefault(operation, []).extend([(exc, after_apply)] * times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_of(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def set_status(self, intent_id: str, status: str, amount_received_cents: Optional[int] = None) -> None:
        intent = self.intents[intent_id]
        intent.status = status
        if amount_received_cents is not None:
            intent.amount_received_cents = amount_received_cents

    def _next_failure(self, operation: str) -> Optional[tuple[Exception, bool]]:
        queue = self._failures.get(operation)
        return queue.pop(0) if queue else None

    def _run(self, operation: str, key: Optional[str], apply, **kwargs):
        self.calls.append((operation, {"idempotency_key": key, **kwargs}))
        failure = self._next_failure(operation)
        if failure is not None and not failure[1]:
            raise failure[0]
        if key is not None and key in self._replies:
            reply = self._replies[key]
        else:
            reply = apply()
            if key is not None:
                self._replies[key] = reply
        if failure is not None:
            raise failure[0]
        return reply

    def _intent(self, intent_id: str) -> ProviderIntent:
        if intent_id not in self.intents:
            raise PaymentProviderError(f"No such payment_intent: {intent_id}", provider_code="resource_missing")
        return self.intents[intent_id]

    # ── provider interface ──

    async def create_payment_intent(self, amount_cents, currency, idempotency_key, transfer_group, metadata=None):
        def apply():
            intent = ProviderIntent(
                id=f"pi_{next(self._ids)}",
                status="requires_payment_method",
                amount_cents=amount_cents,
                currency=currency,
                client_secret="secret",
                metadata=dict(metadata or {}),
            )
            self.intents[intent.id] = intent
            return intent

        return self._run(
            "create_payment_intent", idempotency_key, apply,
            amount_cents=amount_cents, transfer_group=transfer_group,
        )

    async def retrieve_payment_intent(self, intent_id):
        return self._run("retrieve_payment_intent", None, lambda: self._intent(intent_id), intent_id=intent_id)

    async def confirm_payment_intent(self, intent_id, payment_method_id, idempotency_key):
        def apply():
            intent = self._intent(intent_id)
            intent.status = "requires_capture"
            intent.amount_capturable_cents = intent.amount_cents
            return intent

        return self._run("confirm_payment_intent", idempotency_key, apply, intent_id=intent_id)

    async def capture_payment_intent(self, intent_id, idempotency_key, amount_cents=None):
        def apply():
            intent = self._intent(intent_id)
            if intent.status != "requires_capture":
                raise PaymentProviderError(f"Intent is {intent.status}", provider_code="payment_intent_unexpected_state")
            intent.status = "succeeded"
            intent.amount_received_cents = amount_cents if amount_cents is not None else intent.amount_cents
            intent.amount_capturable_cents = 0
            return intent

        return self._run(
            "capture_payment_intent", idempotency_key, apply,
            intent_id=intent_id, amount_cents=amount_cents,
        )

    async def cancel_payment_intent(self, intent_id, idempotency_key, reason="requested_by_customer"):
        def apply():
            intent = self._intent(intent_id)
            if intent.status == "succeeded":
                raise PaymentProviderError("Intent already captured", provider_code="payment_intent_unexpected_state")
            intent.status = "canceled"
            intent.amount_capturable_cents = 0
            return intent

        return self._run("cancel_payment_intent", idempotency_key, apply, intent_id=intent_id, reason=reason)

    async def create_refund(self, intent_id, amount_cents, idempotency_key):
        def apply():
            self._intent(intent_id)
            refund = ProviderRefund(id=f"re_{next(self._ids)}", amount_cents=amount_cents, status="succeeded")
            self.refunds.append(refund)
            return refund

        return self._run("create_refund", idempotency_key, apply, intent_id=intent_id, amount_cents=amount_cents)

    async def create_transfer(
        self,
        amount_cents,
        currency,
        destination_account_id,
        idempotency_key,
        transfer_group=None,
        metadata=None,
    ):
        def apply():
            transfer = ProviderTransfer(
                id=f"tr_{next(self._ids)}", amount_cents=amount_cents, destination=destination_account_id
            )
            self.transfers.append(transfer)
            return transfer

        return self._run(
            "create_transfer", idempotency_key, apply,
            amount_cents=amount_cents, destination_account_id=destination_account_id,
        )

    async def retrieve_account(self, account_id):
        return self._run(
            "retrieve_account", None,
            lambda: self.accounts.get(account_id) or ProviderAccount(id=account_id),
            account_id=account_id,
        )


@pytest.fixture(autouse=True)
def fake_provider():
    """Every service resolves this provider unless one is passed explicitly"""
    provider = FakePaymentProvider()
    set_payment_provider(provider)
    yield provider
    reset_payment_provider()


# ============================================================================
# Test Data Factories
# ============================================================================

_email_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        email: str | None = None,
        full_name: str = "Test User",
        role: UserRole = UserRole.USER,
        is_active: bool = True,
        suspended_until: datetime | None = None,
    ) -> User:
        user = User(
            email=email or f"user{next(_email_counter)}@example.com",
            full_name=full_name,
            role=role,
            is_active=is_active,
            suspended_until=suspended_until,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def payment_account_factory(db_session: AsyncSession):
    """Factory for travelers' connected payout accounts"""
    async def _create_account(
        user: User,
        provider_account_id: str | None = None,
        charges_enabled: bool = True,
        payouts_enabled: bool = True,
    ) -> UserPaymentAccount:
        account = UserPaymentAccount(
            user_id=user.id,
            provider_account_id=provider_account_id or f"acct_test{user.id}",
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
            details_submitted=charges_enabled and payouts_enabled,
        )
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _create_account


@pytest.fixture
def trip_factory(db_session: AsyncSession):
    """Factory for creating test trips"""
    async def _create_trip(
        owner: User,
        departure_in_hours: float = 72,
        available_weight_kg: str = "20.00",
        price_per_kg: str = "10.00",
        status: TripStatus = TripStatus.ACTIVE,
        departure_city: str = "Montreal",
        arrival_city: str = "Paris",
    ) -> Trip:
        trip = Trip(
            owner_id=owner.id,
            departure_city=departure_city,
            arrival_city=arrival_city,
            departure_at=datetime.utcnow() + timedelta(hours=departure_in_hours),
            available_weight_kg=Decimal(available_weight_kg),
            price_per_kg=Decimal(price_per_kg),
            status=status,
        )
        db_session.add(trip)
        await db_session.commit()
        await db_session.refresh(trip)
        return trip

    return _create_trip


def _bearer_headers(user: User) -> dict[str, str]:
    token = create_access_token(user.id, user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """auth_headers(user) -> Authorization header with a fresh access token"""
    return _bearer_headers


@pytest.fixture
def admin_key_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Booking flow
# ============================================================================

@dataclass
class BookingFlow:
    """Drives one booking through the real service, step by step"""
    db: AsyncSession
    provider: FakePaymentProvider
    sender: User
    traveler: User
    trip: Trip

    @property
    def service(self) -> BookingService:
        return BookingService(self.db, self.provider)

    async def reload(self, booking_id: int) -> Booking:
        return await self.service.get_booking(booking_id)

    async def requested(self, weight_kg: str = "2.00", price: str = "100.00") -> Booking:
        result = await self.service.create_booking(self.sender, self.trip.id, Decimal(weight_kg), Decimal(price))
        assert result.success, result.message
        return result.booking

    async def authorized(self, **kwargs) -> Booking:
        booking = await self.requested(**kwargs)
        result = await self.service.accept(booking.id, self.traveler)
        assert result.success, result.message
        return result.booking

    async def confirmed(self, **kwargs) -> Booking:
        booking = await self.authorized(**kwargs)
        result = await self.service.confirm_payment(booking.id, self.sender, payment_method_id="pm_card_visa")
        assert result.success, result.message
        return result.booking

    async def paid(self, **kwargs) -> Booking:
        booking = await self.confirmed(**kwargs)
        result = await self.service.capture(booking.id, self.traveler)
        assert result.success, result.message
        return result.booking

    async def code(self, booking_id: int, code_type: CodeType) -> str:
        code = await self.service.codes.get_active(booking_id, code_type)
        return code.code

    async def in_transit(self, **kwargs) -> Booking:
        booking = await self.paid(**kwargs)
        pickup = await self.code(booking.id, CodeType.PICKUP)
        result = await self.service.validate_pickup(booking.id, self.traveler, pickup)
        assert result.success, result.message
        return result.booking

    async def completed(self, **kwargs) -> Booking:
        booking = await self.in_transit(**kwargs)
        delivery = await self.code(booking.id, CodeType.DELIVERY)
        result = await self.service.validate_delivery(booking.id, self.sender, delivery)
        assert result.success, result.message
        return result.booking


@pytest.fixture
async def sender(user_factory) -> User:
    return await user_factory(email="sender@example.com", full_name="Sam Sender")


@pytest.fixture
async def traveler(user_factory, payment_account_factory) -> User:
    """Trip owner with a fully enabled payout account"""
    user = await user_factory(email="traveler@example.com", full_name="Taylor Traveler")
    await payment_account_factory(user)
    return user


@pytest.fixture
async def admin(user_factory) -> User:
    return await user_factory(email="admin@example.com", full_name="Ada Admin", role=UserRole.ADMIN)


@pytest.fixture
async def trip(trip_factory, traveler) -> Trip:
    return await trip_factory(traveler)


@pytest.fixture
def flow(db_session, fake_provider, sender, traveler, trip) -> BookingFlow:
    return BookingFlow(db_session, fake_provider, sender, traveler, trip)


@pytest.fixture
async def late_flow(db_session, fake_provider, sender, traveler, trip_factory) -> BookingFlow:
    """Same parties, trip departing inside the late-cancellation window"""
    late_trip = await trip_factory(traveler, departure_in_hours=12)
    return BookingFlow(db_session, fake_provider, sender, traveler, late_trip)


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """The app instance (and its rate limiter) lives across tests"""
    from app.core.middleware import RateLimitMiddleware
    RateLimitMiddleware.reset_all()
    yield


class FakeRedis:
    """In-memory Redis stand-in (readiness probe and sweep locks)"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self._store.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Secrets
# ============================================================================

@pytest.fixture(autouse=True)
def set_test_secrets():
    """JWT, admin key and webhook secret for every test"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 480), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET):
        yield


# Note: no cleanup fixture for WebhookEvent rows, every test gets a fresh
# in-memory database through async_engine (function-scoped).

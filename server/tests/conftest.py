"""Test configuration and fixtures."""

from datetime import date, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from trip_reservations.core.clock import FrozenClock
from trip_reservations.core.database import Base
from trip_reservations.core.dependencies import get_db, get_notifier, get_payment_gateway
from trip_reservations.core.locks import KeyedLock
from trip_reservations.models import *  # noqa: F403 - Import all models
from trip_reservations.services.notification_service import ConfirmationNotifier
from trip_reservations.services.trip_series_manager import TripSeriesManager

from helpers import NOW, FakeGateway, RecordingSender, auth_headers, make_template, trip_dates

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine):
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def file_session_factory(tmp_path):
    """
    Session factory over a file database, one connection per session.

    Concurrency tests give every task its own session, which an in-memory
    StaticPool database cannot support.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'trips.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier(sender):
    return ConfirmationNotifier(sender=sender)


@pytest.fixture
def series_manager(test_session, clock, locks):
    return TripSeriesManager(test_session, clock=clock, locks=locks)


@pytest_asyncio.fixture
async def occurrence(series_manager):
    """A visible standalone occurrence 30 days out with 10 seats."""
    return await series_manager.create_occurrence(make_template(capacity=10), trip_dates(30))


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, gateway, notifier):
    """Create a test FastAPI application."""
    from fastapi import FastAPI
    from fastapi.exceptions import RequestValidationError

    from trip_reservations.core.exceptions import (
        ProblemDetailsException,
        generic_exception_handler,
        problem_details_handler,
        validation_exception_handler,
    )
    from trip_reservations.core.middleware import setup_middleware
    from trip_reservations.routers import availability, booking, cart, checkout, health, metrics, series, waitlist

    # Simplified test app without lifespan
    app = FastAPI(title="Trip Reservations API (Test)", version="1.0.0-test")

    setup_middleware(app, enable_logging=False)
    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "trip-reservations-api", "environment": "test"}

    for module in (health, series, availability, cart, checkout, booking, waitlist, metrics):
        app.include_router(module.router)

    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_headers():
    return auth_headers("ops@example.com", roles=["admin"])


@pytest.fixture
def buyer_headers():
    return auth_headers("buyer@example.com")


@pytest.fixture
def future_start() -> date:
    return NOW.date() + timedelta(days=30)

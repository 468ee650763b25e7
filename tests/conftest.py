# tests/conftest.py
"""
Pytest configuration and shared fixtures for the compensation core tests.

Every test gets a fresh in-memory SQLite database, default configuration,
a pinned virtual clock and an audit logger that keeps events in memory.

Run:
    pytest tests -v
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base, User, Order, OrderItem, Payment
from mlm_system.audit import AuditLogger, MemoryAuditSink
from mlm_system.config.plan import reset_plan_cache
from mlm_system.config.ranks import reset_rank_config_cache
from mlm_system.events.event_bus import eventBus
from mlm_system.services.factory import create_services
from mlm_system.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

DEFAULT_CONFIG = {
    Config.DATABASE_URL: "sqlite://",
    Config.LOG_LEVEL: "DEBUG",
    Config.PLACEMENT_MAX_ATTEMPTS: 3,
    Config.PAYOUT_MAX_RETRIES: 3,
    Config.PAYOUT_BASE_DELAY_MINUTES: 30,
    Config.PAYOUT_MAX_DELAY_MINUTES: 1440,
    Config.PAYOUT_LEASE_SECONDS: 300,
    Config.RETRY_POLL_INTERVAL_MINUTES: 5,
    Config.RANK_CHECK_HOUR: 0,
}


# =============================================================================
# ENVIRONMENT FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def config():
    """Known configuration with no plan or rank overrides."""
    Config.reset()
    for key, value in DEFAULT_CONFIG.items():
        Config.set(key, value, source="tests")
    reset_plan_cache()
    reset_rank_config_cache()
    yield Config
    Config.reset()
    reset_plan_cache()
    reset_rank_config_cache()


@pytest.fixture(autouse=True)
def frozen_time():
    """Virtual clock pinned mid-month."""
    timeMachine.setTime(NOW)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def clean_event_bus():
    eventBus.clear()
    yield eventBus
    eventBus.clear()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """In-memory database shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink):
    return AuditLogger(audit_sink)


@pytest.fixture
def services(session, audit):
    return create_services(session, audit=audit)


@pytest.fixture
def run():
    """Run a coroutine to completion."""

    def _run(coro):
        return asyncio.run(coro)

    return _run


# =============================================================================
# DATA FACTORIES
# =============================================================================

@pytest.fixture
def make_user(session):
    """Create a distributor: make_user(status="active", rank="distributor")."""

    def _make(status="active", rank="distributor", firstname=None):
        user = User(status=status, rank=rank, firstname=firstname)
        session.add(user)
        session.commit()
        return user

    return _make


@pytest.fixture
def make_order(session):
    """
    Create an order for a distributor.

    Each item value is used as both price and commissionable value.
    """

    def _make(distributorId, values=(100,), paymentStatus="paid", createdAt=None, customerId=None):
        values = [Decimal(str(v)) for v in values]
        order = Order(
            distributorID=distributorId,
            customerID=customerId,
            total=sum(values, Decimal("0")),
            paymentStatus=paymentStatus,
        )
        if createdAt is not None:
            order.createdAt = createdAt
        session.add(order)
        session.flush()

        for value in values:
            session.add(OrderItem(
                orderID=order.orderID,
                productName="Starter kit",
                price=value,
                commissionableValue=value,
            ))
        session.commit()
        return order

    return _make


@pytest.fixture
def make_payment(session):
    def _make(userId, amount="50.00", status="pending", maxRetries=3, commissionIds=None):
        payment = Payment(
            userID=userId,
            amount=Decimal(amount),
            status=status,
            maxRetries=maxRetries,
            commissionIDs=commissionIds or [],
        )
        session.add(payment)
        session.commit()
        return payment

    return _make


@pytest.fixture
def build_chain(make_user, services, run):
    """
    Build a straight line of sponsors: each user sponsors the next.
    Returns users root first.
    """

    def _build(length):
        users = [make_user() for _ in range(length)]
        run(services.matrix.placeInMatrix(users[0].userID, users[0].userID))
        for sponsor, user in zip(users, users[1:]):
            result = run(services.matrix.placeInMatrix(user.userID, sponsor.userID))
            assert result.success
        return users

    return _build

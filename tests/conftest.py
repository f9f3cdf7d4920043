"""
Shared fixtures for the pay-in monitor test suites.

No network, PostgreSQL or SPV client is needed: the blockchain is an
InMemoryBlockchainWatch, notifications come from a FakeNotificationChannel and
SQL tests run on in-memory SQLite.
"""

import logging
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base
from services.blockchain_watch import InMemoryBlockchainWatch
from services.payment_confirmation_tracker import PaymentConfirmationTracker
from tests.payment_test_foundation import FakeNotificationChannel, StubRateLookup

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest.fixture
def watch():
    return InMemoryBlockchainWatch()


@pytest.fixture
def rate_lookup():
    """20,000 USD/BTC at block 100, 25,000.50 at block 200"""
    return StubRateLookup({100: Decimal("20000.00"), 200: Decimal("25000.50")})


@pytest.fixture
def tracker(watch, rate_lookup):
    return PaymentConfirmationTracker(watch, rate_lookup)


@pytest.fixture
def channel():
    return FakeNotificationChannel()


@pytest.fixture
def mock_engine():
    """Engine whose begin() yields a recording connection"""
    engine = MagicMock()
    engine.executed = []
    connection = engine.begin.return_value.__enter__.return_value
    connection.execute.side_effect = lambda statement, *args, **kwargs: engine.executed.append(str(statement))
    return engine


@pytest.fixture
def sqlite_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()

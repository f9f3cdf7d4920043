"""
Exchange Rate Service Tests
Rate lookup by block height against the exchange_rate table (SQLite in memory)
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from config import Config
from models import ExchangeRate
from services.blockchain_watch import ConfidenceType, InMemoryBlockchainWatch
from services.exchange_rate_service import DatabaseExchangeRateService, ExchangeRateError, NoDataForHeightError
from services.payment_confirmation_tracker import PaymentConfirmationTracker
from tests.payment_test_foundation import BTC_ADDRESS


@pytest.fixture
def seeded_factory(sqlite_session_factory):
    session = sqlite_session_factory()
    session.add_all([
        ExchangeRate(block_nr_btc=100, usd_per_btc=Decimal("20000.00")),
        ExchangeRate(block_nr_btc=200, usd_per_btc=Decimal("25000.50")),
        ExchangeRate(block_nr_btc=300, usd_per_btc=Decimal("0")),
    ])
    session.commit()
    session.close()
    return sqlite_session_factory


class TestDatabaseExchangeRateService:

    def test_exact_height(self, seeded_factory):
        service = DatabaseExchangeRateService(seeded_factory)
        assert service.rate_at(100) == Decimal("20000")
        assert service.rate_at(200) == Decimal("25000.50")

    def test_falls_back_to_latest_earlier_block(self, seeded_factory):
        service = DatabaseExchangeRateService(seeded_factory)
        assert service.rate_at(150) == Decimal("20000")

    def test_stale_earlier_rate_is_treated_as_missing(self, seeded_factory, caplog):
        service = DatabaseExchangeRateService(seeded_factory, max_block_gap=10)

        assert service.rate_at(110) == Decimal("20000")
        with pytest.raises(NoDataForHeightError) as exc_info:
            service.rate_at(111)

        assert exc_info.value.height == 111
        assert "11 blocks earlier" in caplog.text

    def test_block_gap_defaults_to_config(self, seeded_factory, monkeypatch):
        monkeypatch.setattr(Config, "EXCHANGE_RATE_MAX_BLOCK_GAP", 0)
        service = DatabaseExchangeRateService(seeded_factory)

        assert service.rate_at(200) == Decimal("25000.50")
        with pytest.raises(NoDataForHeightError):
            service.rate_at(201)

    def test_height_before_any_rate_raises(self, seeded_factory):
        service = DatabaseExchangeRateService(seeded_factory)
        with pytest.raises(NoDataForHeightError) as exc_info:
            service.rate_at(50)
        assert exc_info.value.height == 50

    def test_zero_rate_is_treated_as_missing(self, seeded_factory):
        service = DatabaseExchangeRateService(seeded_factory)
        with pytest.raises(NoDataForHeightError):
            service.rate_at(300)

    def test_exact_match_is_cached(self, seeded_factory):
        calls = []

        def counting_factory():
            calls.append(1)
            return seeded_factory()

        service = DatabaseExchangeRateService(counting_factory)
        service.rate_at(100)
        service.rate_at(100)
        service.rate_at(150)
        service.rate_at(150)

        assert len(calls) == 3

    def test_driver_errors_become_exchange_rate_errors(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("server closed the connection"))
        service = DatabaseExchangeRateService(lambda: session)

        with pytest.raises(ExchangeRateError) as exc_info:
            service.rate_at(100)

        assert not isinstance(exc_info.value, NoDataForHeightError)
        session.close.assert_called_once()


class TestTrackerWithDatabaseRates:

    def test_confirmed_payment_uses_recorded_rate(self, seeded_factory):
        watch = InMemoryBlockchainWatch()
        tracker = PaymentConfirmationTracker(watch, DatabaseExchangeRateService(seeded_factory))
        tracker.add_monitored_address(BTC_ADDRESS, 1500000000)

        watch.receive("c3" * 32, [(BTC_ADDRESS, 100_000_000)], ConfidenceType.PENDING)
        watch.set_confidence("c3" * 32, ConfidenceType.BUILDING, 100)

        assert tracker.total_raised_usd() == 20000

    def test_missing_rate_leaves_payment_uncredited(self, seeded_factory):
        watch = InMemoryBlockchainWatch()
        tracker = PaymentConfirmationTracker(watch, DatabaseExchangeRateService(seeded_factory))
        tracker.add_monitored_address(BTC_ADDRESS, 1500000000)

        watch.receive("c4" * 32, [(BTC_ADDRESS, 100_000_000)], ConfidenceType.BUILDING, 300)

        assert tracker.total_raised_usd() == 0

"""
Pay-in Monitor Wiring Tests
Notification -> watch registration -> confirmed payment -> USD total
"""

import sys
import types

import pytest

from main import PayinMonitor, load_blockchain_watch
from services.blockchain_watch import ConfidenceType, InMemoryBlockchainWatch
from tests.payment_test_foundation import BTC_ADDRESS, ETH_ADDRESS, wait_for


@pytest.fixture
def monitor(watch, rate_lookup, mock_engine, channel):
    monitor = PayinMonitor(
        watch, rate_lookup, mock_engine,
        channel=channel,
        poll_timeout=0.02,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
    )
    monitor.start()
    yield monitor
    monitor.stop(timeout=2)


class TestPayinMonitor:

    def test_notified_bitcoin_address_is_watched_and_credited(self, monitor, watch, channel):
        channel.publish("bitcoin", BTC_ADDRESS)
        assert wait_for(lambda: watch.is_watched(BTC_ADDRESS))

        watch.receive("d5" * 32, [(BTC_ADDRESS, 100_000_000)], ConfidenceType.PENDING)
        watch.set_confidence("d5" * 32, ConfidenceType.BUILDING, 100)

        assert monitor.total_raised_usd() == 20000

    def test_ether_address_is_not_registered_with_bitcoin_watch(self, monitor, watch, channel):
        channel.publish("ether", ETH_ADDRESS)
        channel.publish("bitcoin", BTC_ADDRESS)
        assert wait_for(lambda: watch.is_watched(BTC_ADDRESS))

        assert not watch.is_watched(ETH_ADDRESS)
        assert [w.address for w in watch.watched_addresses] == [BTC_ADDRESS]

    def test_duplicate_and_empty_notifications_are_tolerated(self, monitor, watch, channel):
        channel.publish("bitcoin", BTC_ADDRESS)
        channel.publish("bitcoin", BTC_ADDRESS)
        channel.publish("bitcoin", "")
        assert wait_for(lambda: monitor.database_watcher.listener.dispatch_count == 3)

        assert len(watch.watched_addresses) == 1
        assert monitor.database_watcher.listener.failure_count == 0

    def test_stop_only_stops_the_listener(self, monitor, watch):
        assert monitor.stop(timeout=2)
        assert not monitor.database_watcher.listener.is_running

        monitor.add_monitored_address(BTC_ADDRESS, 1500000000)
        watch.receive("d6" * 32, [(BTC_ADDRESS, 100_000_000)], ConfidenceType.BUILDING, 100)
        assert monitor.total_raised_usd() == 20000


class TestLoadBlockchainWatch:

    def test_defaults_to_in_memory_watch(self):
        assert isinstance(load_blockchain_watch(""), InMemoryBlockchainWatch)

    def test_factory_path_is_imported(self, monkeypatch):
        module = types.ModuleType("spv_adapter")
        module.build = lambda network: InMemoryBlockchainWatch()
        monkeypatch.setitem(sys.modules, "spv_adapter", module)

        assert isinstance(load_blockchain_watch("spv_adapter:build"), InMemoryBlockchainWatch)

    def test_malformed_factory_path(self):
        with pytest.raises(ValueError):
            load_blockchain_watch("spv_adapter")

    def test_factory_must_return_a_watch(self):
        with pytest.raises(TypeError):
            load_blockchain_watch("builtins:str")

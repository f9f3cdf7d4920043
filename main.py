#!/usr/bin/env python3
"""
Pay-in Monitor

Watches bitcoin pay-in addresses announced by the investor table and keeps a
running USD total of confirmed payments.

Startup sequence:
1. Load .env and validate configuration
2. Verify the database and create missing tables
3. Build the blockchain watch (BLOCKCHAIN_WATCH_FACTORY) and the payment tracker
4. Install the address trigger and start the notification listener
"""

import importlib
import logging
import signal
import sys
import threading
from typing import Optional

from dotenv import load_dotenv

from config import Config
from services.blockchain_watch import BlockchainWatch, InMemoryBlockchainWatch
from services.database_watcher import DatabaseWatcher
from services.exchange_rate_service import ExchangeRateLookup
from services.notification_channel import NotificationChannel
from services.payment_confirmation_tracker import PaymentConfirmationTracker

logger = logging.getLogger(__name__)

STATUS_INTERVAL_SECONDS = 60


class PayinMonitor:
    """Tracker and address listener wired together"""

    def __init__(self,
                 watch: BlockchainWatch,
                 rate_lookup: ExchangeRateLookup,
                 engine,
                 channel: Optional[NotificationChannel] = None,
                 **listener_options):
        self.tracker = PaymentConfirmationTracker(watch, rate_lookup)
        self.database_watcher = DatabaseWatcher(
            engine,
            self._on_new_bitcoin_address,
            self._on_new_ether_address,
            channel=channel,
            **listener_options,
        )

    def start(self):
        self.database_watcher.start()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop the notification listener; the blockchain watch keeps running"""
        return self.database_watcher.stop(timeout)

    def total_raised_usd(self) -> int:
        return self.tracker.total_raised_usd()

    def add_monitored_address(self, address: str, timestamp: int):
        self.tracker.add_monitored_address(address, timestamp)

    def _on_new_bitcoin_address(self, address: str, timestamp: int):
        if not address:
            logger.debug("PAYIN_MONITOR: Empty bitcoin address notified, skipping")
            return
        self.add_monitored_address(address, timestamp)

    def _on_new_ether_address(self, address: str, timestamp: int):
        if not address:
            return
        logger.info(f"PAYIN_MONITOR: New ether pay-in address {address} (ether payments are not tracked here)")


def load_blockchain_watch(factory_path: str = "") -> BlockchainWatch:
    """
    Build the BlockchainWatch from a 'module:callable' path.

    Without a factory an InMemoryBlockchainWatch is returned, which only sees
    events that are injected into it.
    """
    if not factory_path:
        logger.warning("⚠️ PAYIN_MONITOR: No BLOCKCHAIN_WATCH_FACTORY configured, using in-memory watch")
        return InMemoryBlockchainWatch()

    module_name, _, attribute = factory_path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"BLOCKCHAIN_WATCH_FACTORY must look like 'module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    watch = factory(Config.BITCOIN_NETWORK)
    if not isinstance(watch, BlockchainWatch):
        raise TypeError(f"{factory_path} returned {type(watch).__name__}, expected a BlockchainWatch")
    return watch


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=Config.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    Config.log_environment_config()

    problems = Config.validate()
    if problems:
        for problem in problems:
            logger.error(f"❌ CONFIG: {problem}")
        return 1

    from database import create_tables, dispose_engine, get_engine, get_session, test_connection
    from services.exchange_rate_service import DatabaseExchangeRateService

    if not test_connection() or not create_tables():
        return 1

    try:
        watch = load_blockchain_watch(Config.BLOCKCHAIN_WATCH_FACTORY)
    except Exception as e:
        logger.error(f"❌ PAYIN_MONITOR: Could not build blockchain watch: {e}")
        return 1

    monitor = PayinMonitor(watch, DatabaseExchangeRateService(get_session), get_engine())
    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    monitor.start()
    try:
        while not shutdown.wait(STATUS_INTERVAL_SECONDS):
            monitor.tracker.retry_pending()
            logger.info(
                f"📊 PAYIN_MONITOR: Total raised {monitor.total_raised_usd()} USD, "
                f"{monitor.tracker.pending_count} payments pending confirmation"
            )
    finally:
        monitor.stop()
        dispose_engine()
    return 0


if __name__ == "__main__":
    sys.exit(main())

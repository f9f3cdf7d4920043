"""
Payment Confirmation Tracker
Credits every output paid to a watched address to the USD total exactly once,
and only after its transaction is building on the best chain.

Per-output lifecycle:
    OBSERVED  -> CONFIRMED  (confidence reached BUILDING; credited)
    OBSERVED  -> DISCARDED  (DEAD or IN_CONFLICT before BUILDING; never credited)

An output is released as soon as it is credited or discarded. Confirmed
outputs whose credit failed stay tracked until retry_pending() succeeds.

The exchange-rate lookup runs outside the tracker lock. Membership in the
processed set is re-checked under the lock right before the credit is committed.
"""

import functools
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from enum import Enum
from typing import Dict, Optional, Set

from services.blockchain_watch import (
    BlockchainWatch,
    ConfidenceChanged,
    ConfidenceSubscription,
    ConfidenceType,
    UTXOIdentity,
    UTXOReceived,
    UTXOReference,
)
from services.exchange_rate_service import ExchangeRateError, ExchangeRateLookup

logger = logging.getLogger(__name__)

SATOSHI_PER_BTC = Decimal(100_000_000)
USD_MINOR_UNIT = Decimal("0.01")

_TERMINAL_CONFIDENCE = (ConfidenceType.DEAD, ConfidenceType.IN_CONFLICT)
_WAITING_CONFIDENCE = (ConfidenceType.PENDING, ConfidenceType.UNKNOWN)


class DuplicateCreditError(Exception):
    """An output was about to be credited a second time"""

    pass


class UTXOState(Enum):
    OBSERVED = "observed"
    CONFIRMED = "confirmed"
    DISCARDED = "discarded"


def convert_to_usd(satoshi: int, usd_per_btc: Decimal) -> Decimal:
    """Satoshi to USD, rounded down to the cent"""
    usd = Decimal(satoshi) * usd_per_btc / SATOSHI_PER_BTC
    return usd.quantize(USD_MINOR_UNIT, rounding=ROUND_DOWN)


class ContributionLedger:
    """Processed outputs and the running USD total, updated together"""

    def __init__(self):
        self._lock = threading.Lock()
        self._processed: Set[UTXOIdentity] = set()
        self._total = Decimal("0")

    def contains(self, identity: UTXOIdentity) -> bool:
        with self._lock:
            return identity in self._processed

    def commit(self, identity: UTXOIdentity, usd: Decimal) -> Decimal:
        """Record identity as credited and add usd; returns the new total"""
        if usd < 0:
            raise ValueError(f"Refusing negative credit {usd} for {identity}")
        with self._lock:
            if identity in self._processed:
                raise DuplicateCreditError(f"Output {identity} has already been credited")
            self._processed.add(identity)
            self._total += usd
            return self._total

    @property
    def total(self) -> Decimal:
        with self._lock:
            return self._total

    @property
    def processed_count(self) -> int:
        with self._lock:
            return len(self._processed)


@dataclass
class TrackedUTXO:
    utxo: UTXOReference
    state: UTXOState = UTXOState.OBSERVED
    building_height: Optional[int] = None
    subscription: Optional[ConfidenceSubscription] = None
    credited: bool = False


class PaymentConfirmationTracker:
    """Turns BlockchainWatch events into USD credits"""

    def __init__(self, watch: BlockchainWatch, rate_lookup: ExchangeRateLookup):
        self._watch = watch
        self._rate_lookup = rate_lookup
        self._ledger = ContributionLedger()
        self._lock = threading.RLock()
        self._tracked: Dict[UTXOIdentity, TrackedUTXO] = {}
        self.discarded_count = 0
        watch.add_utxo_received_listener(self.on_utxo_received)

    def add_monitored_address(self, address: str, timestamp: int) -> None:
        """
        Add an address to monitor.

        Args:
            address: Base58 bitcoin address
            timestamp: Seconds since epoch when the address was created
        """
        logger.info(f"PAYMENT_TRACKER: Add monitored Bitcoin address {address}")
        self._watch.watch(address, timestamp)

    def total_raised_usd(self) -> int:
        """Running total rounded up to the whole dollar"""
        return int(self._ledger.total.quantize(Decimal("1"), rounding=ROUND_UP))

    def is_processed(self, identity: UTXOIdentity) -> bool:
        return self._ledger.contains(identity)

    def state_of(self, identity: UTXOIdentity) -> Optional[UTXOState]:
        """Current state; None for outputs never tracked or already discarded and released"""
        with self._lock:
            tracked = self._tracked.get(identity)
            if tracked is not None:
                return tracked.state
        return UTXOState.CONFIRMED if self._ledger.contains(identity) else None

    @property
    def pending_count(self) -> int:
        """Outputs still waiting to reach BUILDING"""
        with self._lock:
            return sum(1 for t in self._tracked.values() if t.state is UTXOState.OBSERVED)

    @property
    def tracked_count(self) -> int:
        """Outputs not yet resolved: waiting for BUILDING or confirmed but uncredited"""
        with self._lock:
            return len(self._tracked)

    def on_utxo_received(self, event: UTXOReceived) -> None:
        utxo = event.utxo
        if self._ledger.contains(utxo.identity):
            return
        if not self._watch.is_watched(utxo.address):
            return

        subscription = None
        with self._lock:
            tracked = self._tracked.get(utxo.identity)
            if tracked is not None:
                # Seen before: treat the repeated event as a confidence update
                to_credit = self._advance(tracked, utxo.confidence, utxo.appeared_at_height)
            else:
                tracked = TrackedUTXO(utxo)
                self._tracked[utxo.identity] = tracked
                to_credit = self._observe(tracked)
            if tracked.state is UTXOState.DISCARDED:
                subscription = self._release(tracked)

        if subscription is not None:
            self._watch.unsubscribe(subscription)
        if to_credit:
            self._credit(tracked)

    def _observe(self, tracked: TrackedUTXO) -> bool:
        """First sighting; returns True when the output can be credited now"""
        utxo = tracked.utxo
        if utxo.confidence is ConfidenceType.BUILDING:
            tracked.state = UTXOState.CONFIRMED
            tracked.building_height = utxo.appeared_at_height
            return True

        if utxo.confidence in _WAITING_CONFIDENCE:
            logger.info(f"PAYMENT_TRACKER: Pending {utxo.amount} satoshi received in {utxo.txid}")
            tracked.subscription = self._watch.subscribe_confidence(
                utxo.identity, functools.partial(self._on_confidence_changed, utxo.identity)
            )
            return False

        tracked.state = UTXOState.DISCARDED
        logger.warning(
            f"PAYMENT_TRACKER: Ignoring {utxo.identity} received with confidence {utxo.confidence.value}"
        )
        return False

    def _advance(self, tracked: TrackedUTXO, confidence: ConfidenceType, height: Optional[int]) -> bool:
        """Apply a confidence update; returns True when a credit attempt is due"""
        if tracked.credited or tracked.state is UTXOState.DISCARDED:
            return False

        if confidence is ConfidenceType.BUILDING:
            if tracked.state is UTXOState.OBSERVED:
                tracked.state = UTXOState.CONFIRMED
                tracked.building_height = height
            elif tracked.building_height is None:
                tracked.building_height = height
            return True

        if confidence in _TERMINAL_CONFIDENCE and tracked.state is UTXOState.OBSERVED:
            tracked.state = UTXOState.DISCARDED
            logger.info(
                f"PAYMENT_TRACKER: Discarding {tracked.utxo.identity} "
                f"({tracked.utxo.amount} satoshi), confidence became {confidence.value}"
            )
        return False

    def _release(self, tracked: TrackedUTXO) -> Optional[ConfidenceSubscription]:
        """Forget a resolved output; returns the subscription to cancel. Caller holds the lock."""
        if self._tracked.get(tracked.utxo.identity) is tracked:
            del self._tracked[tracked.utxo.identity]
            if tracked.state is UTXOState.DISCARDED:
                self.discarded_count += 1
        subscription, tracked.subscription = tracked.subscription, None
        return subscription

    def _on_confidence_changed(self, identity: UTXOIdentity, event: ConfidenceChanged) -> None:
        subscription = None
        with self._lock:
            tracked = self._tracked.get(identity)
            if tracked is None:
                return
            to_credit = self._advance(tracked, event.confidence, event.appeared_at_height)
            if tracked.state is UTXOState.DISCARDED:
                subscription = self._release(tracked)

        if subscription is not None:
            self._watch.unsubscribe(subscription)
        if to_credit:
            self._credit(tracked)

    def retry_pending(self) -> int:
        """Re-drive confirmed outputs whose credit failed earlier; returns how many got credited"""
        with self._lock:
            waiting = [
                t for t in self._tracked.values()
                if t.state is UTXOState.CONFIRMED and not t.credited
            ]
        if waiting:
            logger.info(f"PAYMENT_TRACKER: Retrying {len(waiting)} uncredited confirmed outputs")
        return sum(1 for tracked in waiting if self._credit(tracked))

    def _credit(self, tracked: TrackedUTXO) -> bool:
        """
        Convert and commit one confirmed output.

        Returns True when this call committed the credit. Lookup failures are
        logged and leave the output uncredited for a later retry.
        """
        utxo = tracked.utxo
        if self._ledger.contains(utxo.identity):
            return False

        height = tracked.building_height
        if height is None:
            logger.error(
                f"PAYMENT_TRACKER: No block height for utxo in tx {utxo.txid} "
                f"with satoshi value {utxo.amount}, credit deferred"
            )
            return False

        try:
            usd_per_btc = self._rate_lookup.rate_at(height)
        except ExchangeRateError as e:
            logger.error(
                f"PAYMENT_TRACKER: Could not fetch exchange rate for utxo in tx {utxo.txid} "
                f"with satoshi value {utxo.amount} at block height {height}: {e}"
            )
            return False
        except Exception as e:
            logger.exception(
                f"PAYMENT_TRACKER: Exchange rate lookup crashed for utxo in tx {utxo.txid} "
                f"with satoshi value {utxo.amount} at block height {height}: {e}"
            )
            return False

        usd_received = convert_to_usd(utxo.amount, usd_per_btc)

        with self._lock:
            if self._ledger.contains(utxo.identity):
                logger.debug(f"PAYMENT_TRACKER: {utxo.identity} credited concurrently, skipping")
                return False
            try:
                new_total = self._ledger.commit(utxo.identity, usd_received)
            except DuplicateCreditError:
                logger.critical(f"PAYMENT_TRACKER: Double credit attempted for {utxo.identity}")
                raise
            tracked.credited = True
            subscription = self._release(tracked)

        if subscription is not None:
            self._watch.unsubscribe(subscription)

        logger.info(
            f"PAYMENT_TRACKER: Received {usd_received} USD / {utxo.amount} satoshi / "
            f"{height} blockHeight / {usd_per_btc} fx-rate / {utxo.txid} txid (total {new_total})"
        )
        return True

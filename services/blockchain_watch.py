"""
Blockchain Watch Contract
Narrow interface onto the SPV client that tracks watched addresses and reports
received outputs and confidence changes, plus a synthetic in-memory source.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConfidenceType(Enum):
    """Degree of network acceptance of a transaction"""
    UNKNOWN = "unknown"
    PENDING = "pending"          # In the mempool, not yet in a block
    BUILDING = "building"        # Included in the best chain with >= 1 block on top
    DEAD = "dead"                # Conflicting transaction made it into the best chain
    IN_CONFLICT = "in_conflict"  # Competing unconfirmed double spend seen


@dataclass(frozen=True)
class UTXOIdentity:
    """Transaction id plus output index"""
    txid: str
    output_index: int

    def __str__(self):
        return f"{self.txid}:{self.output_index}"


@dataclass(frozen=True)
class UTXOReference:
    """A transaction output paying one address, as seen when it was received"""
    identity: UTXOIdentity
    address: str
    amount: int  # satoshi
    confidence: ConfidenceType
    appeared_at_height: Optional[int] = None

    @property
    def txid(self) -> str:
        return self.identity.txid


@dataclass(frozen=True)
class WatchedAddress:
    address: str
    timestamp: int
    currency: str = "bitcoin"


@dataclass(frozen=True)
class UTXOReceived:
    utxo: UTXOReference


@dataclass(frozen=True)
class ConfidenceChanged:
    identity: UTXOIdentity
    confidence: ConfidenceType
    appeared_at_height: Optional[int] = None


@dataclass(frozen=True)
class ConfidenceSubscription:
    """Handle returned by subscribe_confidence, used to detach later"""
    subscription_id: int
    identity: UTXOIdentity


UTXOReceivedListener = Callable[[UTXOReceived], None]
ConfidenceListener = Callable[[ConfidenceChanged], None]


class BlockchainWatch(ABC):
    """Capabilities the payment tracker needs from an SPV client"""

    @abstractmethod
    def watch(self, address: str, since_timestamp: int) -> None:
        """Start watching an address. Must be idempotent."""

    @abstractmethod
    def is_watched(self, address: str) -> bool:
        ...

    @abstractmethod
    def add_utxo_received_listener(self, listener: UTXOReceivedListener) -> None:
        ...

    @abstractmethod
    def subscribe_confidence(self, identity: UTXOIdentity, listener: ConfidenceListener) -> ConfidenceSubscription:
        ...

    @abstractmethod
    def unsubscribe(self, subscription: ConfidenceSubscription) -> None:
        """Detach a confidence subscription. Unknown handles are ignored."""


class InMemoryBlockchainWatch(BlockchainWatch):
    """
    Synthetic, thread-safe event source implementing BlockchainWatch.

    Used for replays and tests, and as the fallback when no SPV client is
    configured. Events are delivered synchronously on the caller's thread,
    never while the internal lock is held.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._watched: Dict[str, WatchedAddress] = {}
        self._received_listeners: List[UTXOReceivedListener] = []
        self._subscriptions: Dict[int, Tuple[ConfidenceSubscription, ConfidenceListener]] = {}
        self._ids = itertools.count(1)

    def watch(self, address: str, since_timestamp: int, currency: str = "bitcoin") -> None:
        with self._lock:
            existing = self._watched.get(address)
            if existing is not None and existing.timestamp <= since_timestamp:
                logger.debug(f"BLOCKCHAIN_WATCH: {address} already watched since {existing.timestamp}")
                return
            self._watched[address] = WatchedAddress(address, since_timestamp, currency)
        logger.info(f"BLOCKCHAIN_WATCH: Watching {address} since {since_timestamp}")

    def is_watched(self, address: str) -> bool:
        with self._lock:
            return address in self._watched

    @property
    def watched_addresses(self) -> List[WatchedAddress]:
        with self._lock:
            return list(self._watched.values())

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_utxo_received_listener(self, listener: UTXOReceivedListener) -> None:
        with self._lock:
            self._received_listeners.append(listener)

    def subscribe_confidence(self, identity: UTXOIdentity, listener: ConfidenceListener) -> ConfidenceSubscription:
        with self._lock:
            subscription = ConfidenceSubscription(next(self._ids), identity)
            self._subscriptions[subscription.subscription_id] = (subscription, listener)
            return subscription

    def unsubscribe(self, subscription: ConfidenceSubscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.subscription_id, None)

    def receive(self,
                txid: str,
                outputs: Iterable[Tuple[str, int]],
                confidence: ConfidenceType = ConfidenceType.PENDING,
                appeared_at_height: Optional[int] = None) -> List[UTXOReference]:
        """
        Simulate a transaction paying to (address, satoshi) outputs.

        Returns the output references delivered to listeners. Nothing is
        delivered when no output pays a watched address.
        """
        utxos = [
            UTXOReference(UTXOIdentity(txid, index), address, amount, confidence, appeared_at_height)
            for index, (address, amount) in enumerate(outputs)
        ]
        with self._lock:
            if not any(utxo.address in self._watched for utxo in utxos):
                return []
            listeners = list(self._received_listeners)
        for utxo in utxos:
            for listener in listeners:
                listener(UTXOReceived(utxo))
        return utxos

    def set_confidence(self, txid: str, confidence: ConfidenceType, appeared_at_height: Optional[int] = None) -> int:
        """Notify every subscription on outputs of txid; returns how many were notified"""
        with self._lock:
            targets = [
                (subscription, listener)
                for subscription, listener in self._subscriptions.values()
                if subscription.identity.txid == txid
            ]
        for subscription, listener in targets:
            listener(ConfidenceChanged(subscription.identity, confidence, appeared_at_height))
        return len(targets)

"""
Exchange Rate Lookup by Block Height
Resolves the USD per BTC rate recorded at (or before) a given block height
"""

import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import ExchangeRate

logger = logging.getLogger(__name__)


class ExchangeRateError(Exception):
    """Exception for exchange rate related errors"""

    pass


class NoDataForHeightError(ExchangeRateError):
    """No usable rate exists for the requested block height"""

    def __init__(self, height: int):
        super().__init__(f"No exchange rate for block height {height}")
        self.height = height


class ExchangeRateLookup(ABC):
    """USD per coin at a block height. Never returns zero or None for missing data."""

    @abstractmethod
    def rate_at(self, height: int) -> Decimal:
        """Return a positive rate or raise NoDataForHeightError"""


class DatabaseExchangeRateService(ExchangeRateLookup):
    """
    ExchangeRateLookup backed by the exchange_rate table.

    A height without its own row uses the latest earlier row, provided that row
    is at most max_block_gap blocks older. Beyond that the rate counts as missing.
    """

    def __init__(self, session_factory: Callable[[], Session], max_block_gap: Optional[int] = None):
        self._session_factory = session_factory
        self._max_block_gap = max_block_gap if max_block_gap is not None else Config.EXCHANGE_RATE_MAX_BLOCK_GAP
        self._cache: Dict[int, Decimal] = {}
        self._cache_lock = threading.Lock()

    def rate_at(self, height: int) -> Decimal:
        with self._cache_lock:
            cached = self._cache.get(height)
        if cached is not None:
            return cached

        try:
            row = self._query_rate(height)
        except SQLAlchemyError as e:
            raise ExchangeRateError(f"Exchange rate query failed for block height {height}: {e}") from e

        if row is None or row.usd_per_btc is None or row.usd_per_btc <= 0:
            raise NoDataForHeightError(height)

        gap = height - row.block_nr_btc
        if gap > self._max_block_gap:
            logger.warning(
                f"⚠️ EXCHANGE_RATE: Latest rate for block {height} was recorded at block {row.block_nr_btc}, "
                f"{gap} blocks earlier (limit {self._max_block_gap}); treating as missing"
            )
            raise NoDataForHeightError(height)

        rate = Decimal(row.usd_per_btc)
        # Only exact matches are final; a fallback to an earlier block may be superseded
        if row.block_nr_btc == height:
            with self._cache_lock:
                self._cache[height] = rate
        logger.debug(f"EXCHANGE_RATE: block {height} -> {rate} USD/BTC (recorded at block {row.block_nr_btc})")
        return rate

    def _query_rate(self, height: int):
        session = self._session_factory()
        try:
            stmt = (
                select(ExchangeRate.block_nr_btc, ExchangeRate.usd_per_btc)
                .where(ExchangeRate.block_nr_btc <= height)
                .order_by(ExchangeRate.block_nr_btc.desc(), ExchangeRate.id.desc())
                .limit(1)
            )
            return session.execute(stmt).first()
        finally:
            session.close()

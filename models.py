"""
Pay-in Monitor - Database Schema
================================

Tables the monitor reads from:
- investor: pay-in addresses assigned to investors (watched by the notify trigger)
- exchange_rate: USD per BTC, keyed by the block height it was recorded at
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, Index, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class Currency(Enum):
    """Pay-in currencies, one notification channel each"""
    BITCOIN = "bitcoin"
    ETHER = "ether"


class Investor(Base):
    """Investor with the pay-in addresses assigned to them"""
    __tablename__ = "investor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    pay_in_bitcoin_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pay_in_ether_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Investor(id={self.id}, btc={self.pay_in_bitcoin_address}, eth={self.pay_in_ether_address})>"


class ExchangeRate(Base):
    """USD per BTC recorded at a given block height"""
    __tablename__ = "exchange_rate"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_nr_btc: Mapped[int] = mapped_column(BigInteger, nullable=False)
    usd_per_btc: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_exchange_rate_block_nr_btc", "block_nr_btc"),
    )

    def __repr__(self):
        return f"<ExchangeRate(block={self.block_nr_btc}, usd_per_btc={self.usd_per_btc})>"

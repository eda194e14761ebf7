"""Confirmed on-chain transactions observed for watched addresses."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from w3hub.database import Base


class TransactionRecord(Base):
    """One row per (chain, hash). Immutable once written."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(50), nullable=False)
    hash: Mapped[str] = mapped_column(String(128), nullable=False)

    # Watched address that first observed the transaction
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    from_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    to_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    amount: Mapped[str] = mapped_column(String(96), nullable=False, default="0")
    symbol: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("chain", "hash", name="uq_transaction_chain_hash"),
        Index("idx_tx_chain_address_block", "chain", "address", "block_height"),
        Index("idx_tx_chain_from_block", "chain", "from_address", "block_height"),
        Index("idx_tx_chain_to_block", "chain", "to_address", "block_height"),
    )

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)

    def __repr__(self) -> str:
        return f"<TransactionRecord(chain={self.chain}, hash={self.hash}, block={self.block_height})>"

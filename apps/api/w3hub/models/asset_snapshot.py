"""Last-known asset balances per (chain, address, symbol)."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from w3hub.database import Base


class AssetSnapshot(Base):
    __tablename__ = "asset_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(50), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    symbol: Mapped[str] = mapped_column(String(128), nullable=False)
    contract: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Exact decimal text; SQLite has no fixed-point type
    quantity: Mapped[str] = mapped_column(String(96), nullable=False, default="0")
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("chain", "address", "symbol", name="uq_asset_chain_address_symbol"),
        Index("idx_asset_chain_address", "chain", "address"),
    )

    @property
    def quantity_decimal(self) -> Decimal:
        return Decimal(self.quantity)

    def __repr__(self) -> str:
        return f"<AssetSnapshot(chain={self.chain}, address={self.address}, symbol={self.symbol}, qty={self.quantity})>"

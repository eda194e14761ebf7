"""Chain client capability and the normalized data it produces."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List


@dataclass(frozen=True)
class Asset:
    """A balance held by an address. Identity is (chain, address, symbol)."""

    chain: str
    address: str
    symbol: str                     # display symbol, unique per address
    quantity: Decimal               # decimals-adjusted, exact
    contract: str = "native"        # token contract or "native"
    last_updated: datetime = field(default_factory=datetime.utcnow, compare=False)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.chain, self.address, self.symbol)


@dataclass(frozen=True)
class Transaction:
    """A confirmed transaction touching a watched address. Unique per (chain, hash)."""

    chain: str
    hash: str
    from_address: str
    to_address: str
    amount: Decimal
    timestamp: datetime
    block_height: int               # ordering key
    symbol: str | None = None

    @property
    def ordering_key(self) -> tuple[int, str]:
        return (self.block_height, self.hash)


class ChainClient(ABC):
    """
    Capability every blockchain backend implements.

    Backends raise ``InvalidAddress`` for malformed input and
    ``BackendUnavailable`` for any network or RPC failure.
    """

    chain_id: str = ""
    native_symbol: str = ""

    @property
    def supports_streaming(self) -> bool:
        """Whether ``watch_address`` yields a live stream for this backend."""
        return False

    def validate_address(self, address: str) -> bool:
        """Pure well-formedness check. No network calls."""
        return bool(address and address.strip())

    def normalize_address(self, address: str) -> str:
        """Canonical form used as the storage key for an address."""
        return address.strip()

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal:
        """Native coin balance of the address."""

    @abstractmethod
    async def get_assets(self, address: str) -> List[Asset]:
        """
        All non-zero balances of the address, in a stable order.

        Returns an empty list (not an error) when the address holds nothing.
        """

    @abstractmethod
    async def get_transactions(
        self,
        address: str,
        from_time: datetime,
        to_time: datetime,
    ) -> List[Transaction]:
        """
        Transactions in the half-open window ``[from_time, to_time)``.

        Pagination is handled by the backend; the full list is returned
        sorted ascending by ordering key.
        """

    def watch_address(self, address: str) -> AsyncIterator[Transaction]:
        """
        Unbounded, cancellable stream of new transactions for the address.

        Delivery is at-least-once; consumers dedup by (chain, hash).
        Closing the iterator releases backend resources.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support live streams")

    async def aclose(self) -> None:
        """Release pooled connections."""
        return None

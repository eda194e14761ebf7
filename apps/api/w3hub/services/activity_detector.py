"""
Change detection between consecutive observations of a watched address.

Pure and side-effect free: callers pass what was stored and what was just
fetched, and get back the alert events to emit.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from w3hub.chains.base import Asset, Transaction


class AlertKind(str, Enum):
    BALANCE_CHANGE = "balance-change"
    NEW_TRANSACTION = "new-transaction"


@dataclass
class AlertEvent:
    chain: str
    address: str
    kind: AlertKind
    payload: Dict[str, Any]
    detected_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def dedupe_key(self) -> Optional[str]:
        """Key for dropping redelivered transaction events; balance moves can legitimately repeat."""
        if self.kind != AlertKind.NEW_TRANSACTION:
            return None
        return f"{self.chain}:{self.address}:{self.kind.value}:{self.payload.get('hash', '')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "address": self.address,
            "kind": self.kind.value,
            "payload": self.payload,
            "detected_at": self.detected_at.isoformat(),
        }


class ActivityDetector:
    """Compares snapshots and transaction batches to decide what is new."""

    def __init__(self, epsilon: Decimal = Decimal("0")):
        if epsilon < 0:
            raise ValueError("epsilon must be non-negative")
        self.epsilon = Decimal(epsilon)

    def detect(
        self,
        old: Iterable[Asset],
        new: Iterable[Asset],
        chain: Optional[str] = None,
        address: Optional[str] = None,
    ) -> List[AlertEvent]:
        """
        One balance-change event per symbol whose quantity moved by more
        than epsilon. A symbol missing on one side counts as zero.
        """
        old_by_symbol = {a.symbol: a for a in old}
        new_by_symbol = {a.symbol: a for a in new}

        events: List[AlertEvent] = []
        for symbol in sorted(set(old_by_symbol) | set(new_by_symbol)):
            before = old_by_symbol.get(symbol)
            after = new_by_symbol.get(symbol)
            previous = before.quantity if before else Decimal(0)
            current = after.quantity if after else Decimal(0)
            delta = current - previous
            if abs(delta) <= self.epsilon:
                continue

            ref = after or before
            events.append(AlertEvent(
                chain=chain or ref.chain,
                address=address or ref.address,
                kind=AlertKind.BALANCE_CHANGE,
                payload={
                    "symbol": symbol,
                    "contract": ref.contract,
                    "previous": str(previous),
                    "current": str(current),
                    "delta": str(delta),
                },
            ))
        return events

    def detect_transactions(
        self,
        transactions: Iterable[Transaction],
        known_hashes: Set[str],
        chain: str,
        address: str,
    ) -> List[AlertEvent]:
        """One new-transaction event per hash not already known, in ordering-key order."""
        seen = set(known_hashes)
        events: List[AlertEvent] = []
        for tx in sorted(transactions, key=lambda t: t.ordering_key):
            if tx.hash in seen:
                continue
            seen.add(tx.hash)
            events.append(AlertEvent(
                chain=chain,
                address=address,
                kind=AlertKind.NEW_TRANSACTION,
                payload={
                    "hash": tx.hash,
                    "from": tx.from_address,
                    "to": tx.to_address,
                    "amount": str(tx.amount),
                    "symbol": tx.symbol,
                    "block_height": tx.block_height,
                    "timestamp": tx.timestamp.isoformat(),
                },
            ))
        return events

"""
Durable state for tracked addresses.

- Asset snapshots: the latest successfully fetched balances per
  (chain, address, symbol), replaced atomically per address.
- Transactions: idempotent insert keyed by (chain, hash).
- Watch targets: the set of (chain, address) pairs the engine polls.

Writes for one (chain, address) are serialized; unrelated addresses proceed
in parallel. A transaction hash stored concurrently through another address
on the same chain surfaces as an IntegrityError and counts as a duplicate.
"""
import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
import weakref
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from w3hub.chains.base import Asset, Transaction
from w3hub.database import async_session_maker
from w3hub.exceptions import StorageFailure
from w3hub.models import AssetSnapshot, TransactionRecord, WatchTarget

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    chain: str
    address: str
    assets: List[Asset]
    as_of: datetime


@dataclass
class TransactionPage:
    items: List[Transaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return (self.offset + self.limit) < self.total


def _storage_op(fn):
    """Translate SQLAlchemy errors into StorageFailure."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except SQLAlchemyError as e:
            raise StorageFailure(f"{fn.__name__} failed: {e}") from e

    return wrapper


def _to_asset(row: AssetSnapshot) -> Asset:
    return Asset(
        chain=row.chain,
        address=row.address,
        symbol=row.symbol,
        quantity=row.quantity_decimal,
        contract=row.contract or "native",
        last_updated=row.last_updated,
    )


def _to_transaction(row: TransactionRecord) -> Transaction:
    return Transaction(
        chain=row.chain,
        hash=row.hash,
        from_address=row.from_address,
        to_address=row.to_address,
        amount=row.amount_decimal,
        timestamp=row.timestamp,
        block_height=row.block_height,
        symbol=row.symbol,
    )


class AssetSnapshotStore:
    """Relational persistence for snapshots, transactions and watch targets."""

    def __init__(self, session_maker=None):
        self._session_maker = session_maker or async_session_maker
        # Entries vanish once no writer holds or awaits the lock
        self._address_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _address_lock(self, chain: str, address: str) -> asyncio.Lock:
        lock = self._address_locks.get((chain, address))
        if lock is None:
            lock = asyncio.Lock()
            self._address_locks[(chain, address)] = lock
        return lock

    # ------------------------------------------------------------------
    # Asset snapshots
    # ------------------------------------------------------------------

    @_storage_op
    async def upsert(self, chain: str, address: str, assets: Sequence[Asset]) -> None:
        """
        Replace the stored asset list of an address in one transaction.

        Symbols absent from ``assets`` are removed, so readers see either the
        previous list or the new one, never a mix. Also stamps the watch
        target's ``last_synced_at``.
        """
        now = datetime.utcnow()
        incoming = {a.symbol: a for a in assets}
        async with self._address_lock(chain, address):
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        select(AssetSnapshot).where(
                            AssetSnapshot.chain == chain,
                            AssetSnapshot.address == address,
                        )
                    )
                    existing = {row.symbol: row for row in result.scalars().all()}

                    for symbol, row in existing.items():
                        if symbol not in incoming:
                            await session.delete(row)

                    for symbol, asset in incoming.items():
                        row = existing.get(symbol)
                        if row is None:
                            session.add(AssetSnapshot(
                                chain=chain,
                                address=address,
                                symbol=symbol,
                                contract=asset.contract,
                                quantity=str(asset.quantity),
                                last_updated=asset.last_updated or now,
                            ))
                        else:
                            row.quantity = str(asset.quantity)
                            row.contract = asset.contract
                            row.last_updated = asset.last_updated or now

                    await session.execute(
                        update(WatchTarget)
                        .where(WatchTarget.chain == chain, WatchTarget.address == address)
                        .values(last_synced_at=now)
                    )

    @_storage_op
    async def get_latest(self, chain: str, address: str) -> List[Asset]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AssetSnapshot)
                .where(AssetSnapshot.chain == chain, AssetSnapshot.address == address)
                .order_by(AssetSnapshot.symbol)
            )
            return [_to_asset(row) for row in result.scalars().all()]

    @_storage_op
    async def get_snapshot(self, chain: str, address: str) -> Optional[Snapshot]:
        """Latest snapshot with its age, or None if the address was never synced."""
        async with self._session_maker() as session:
            rows = (await session.execute(
                select(AssetSnapshot)
                .where(AssetSnapshot.chain == chain, AssetSnapshot.address == address)
                .order_by(AssetSnapshot.symbol)
            )).scalars().all()
            synced_at = (await session.execute(
                select(WatchTarget.last_synced_at)
                .where(WatchTarget.chain == chain, WatchTarget.address == address)
            )).scalar_one_or_none()

        if not rows and synced_at is None:
            return None
        as_of = synced_at or max(row.last_updated for row in rows)
        return Snapshot(chain=chain, address=address, assets=[_to_asset(r) for r in rows], as_of=as_of)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @_storage_op
    async def known_hashes(self, chain: str, hashes: Iterable[str]) -> Set[str]:
        wanted = list(set(hashes))
        if not wanted:
            return set()
        async with self._session_maker() as session:
            result = await session.execute(
                select(TransactionRecord.hash).where(
                    TransactionRecord.chain == chain,
                    TransactionRecord.hash.in_(wanted),
                )
            )
            return set(result.scalars().all())

    @_storage_op
    async def append_transactions(
        self,
        chain: str,
        address: str,
        transactions: Iterable[Transaction],
    ) -> List[Transaction]:
        """
        Insert transactions not yet stored for the chain.

        Duplicates (already stored, or repeated within the batch) are
        silently skipped. Returns the transactions actually inserted.
        """
        batch: Dict[str, Transaction] = {}
        for tx in transactions:
            batch.setdefault(tx.hash, tx)
        if not batch:
            return []

        async with self._address_lock(chain, address):
            existing = await self.known_hashes(chain, batch)
            candidates = [tx for h, tx in batch.items() if h not in existing]
            inserted = []
            if candidates:
                try:
                    await self._insert_transactions(chain, address, candidates)
                    inserted = candidates
                except IntegrityError:
                    # Another address on this chain stored some of these first
                    for tx in candidates:
                        try:
                            await self._insert_transactions(chain, address, [tx])
                        except IntegrityError:
                            continue
                        inserted.append(tx)

        if inserted:
            logger.debug(f"[{chain}] stored {len(inserted)} new transactions for {address}")
        return sorted(inserted, key=lambda tx: tx.ordering_key)

    async def _insert_transactions(self, chain: str, address: str, transactions: List[Transaction]) -> None:
        async with self._session_maker() as session:
            async with session.begin():
                session.add_all([
                    TransactionRecord(
                        chain=chain,
                        hash=tx.hash,
                        address=address,
                        from_address=tx.from_address,
                        to_address=tx.to_address,
                        amount=str(tx.amount),
                        symbol=tx.symbol,
                        timestamp=tx.timestamp,
                        block_height=tx.block_height,
                    )
                    for tx in transactions
                ])

    @_storage_op
    async def list_transactions(
        self,
        chain: str,
        address: str,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        """Transactions touching the address, newest first."""
        touches = or_(
            TransactionRecord.address == address,
            TransactionRecord.from_address == address,
            TransactionRecord.to_address == address,
        )
        async with self._session_maker() as session:
            total = (await session.execute(
                select(func.count(TransactionRecord.id)).where(TransactionRecord.chain == chain, touches)
            )).scalar() or 0
            rows = (await session.execute(
                select(TransactionRecord)
                .where(TransactionRecord.chain == chain, touches)
                .order_by(TransactionRecord.block_height.desc(), TransactionRecord.hash.desc())
                .offset(offset)
                .limit(limit)
            )).scalars().all()
        return TransactionPage(
            items=[_to_transaction(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )

    # ------------------------------------------------------------------
    # Watch targets
    # ------------------------------------------------------------------

    @_storage_op
    async def add_target(self, chain: str, address: str) -> Tuple[WatchTarget, bool]:
        """Create or reactivate a target. Returns (target, changed)."""
        async with self._address_lock(chain, address):
            async with self._session_maker() as session:
                async with session.begin():
                    target = (await session.execute(
                        select(WatchTarget).where(WatchTarget.chain == chain, WatchTarget.address == address)
                    )).scalar_one_or_none()
                    if target is not None and target.is_active:
                        return target, False
                    if target is None:
                        target = WatchTarget(chain=chain, address=address, is_active=True, state="starting")
                        session.add(target)
                    else:
                        target.is_active = True
                        target.state = "starting"
                        target.fault = None
                        target.deactivated_at = None
                return target, True

    @_storage_op
    async def get_target(self, target_id: int) -> Optional[WatchTarget]:
        async with self._session_maker() as session:
            return await session.get(WatchTarget, target_id)

    @_storage_op
    async def find_target(self, chain: str, address: str) -> Optional[WatchTarget]:
        async with self._session_maker() as session:
            return (await session.execute(
                select(WatchTarget).where(WatchTarget.chain == chain, WatchTarget.address == address)
            )).scalar_one_or_none()

    @_storage_op
    async def list_targets(self, active_only: bool = False) -> List[WatchTarget]:
        query = select(WatchTarget).order_by(WatchTarget.id)
        if active_only:
            query = query.where(WatchTarget.is_active == True)  # noqa: E712
        async with self._session_maker() as session:
            return list((await session.execute(query)).scalars().all())

    @_storage_op
    async def set_target_state(self, chain: str, address: str, state: str, fault: Optional[str] = None) -> None:
        values = {"state": state}
        if fault is not None:
            values["fault"] = fault
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(WatchTarget)
                    .where(WatchTarget.chain == chain, WatchTarget.address == address)
                    .values(**values)
                )

    @_storage_op
    async def deactivate_target(self, chain: str, address: str, fault: Optional[str] = None) -> bool:
        values = {"is_active": False, "state": "stopped", "deactivated_at": datetime.utcnow()}
        if fault is not None:
            values["fault"] = fault
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(WatchTarget)
                    .where(
                        WatchTarget.chain == chain,
                        WatchTarget.address == address,
                        WatchTarget.is_active == True,  # noqa: E712
                    )
                    .values(**values)
                )
        return result.rowcount > 0

    @_storage_op
    async def deactivate_all(self) -> int:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(WatchTarget)
                    .where(WatchTarget.is_active == True)  # noqa: E712
                    .values(is_active=False, state="stopped", deactivated_at=datetime.utcnow())
                )
        return result.rowcount

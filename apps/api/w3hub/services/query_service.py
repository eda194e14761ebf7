"""
Read path used by the HTTP API.

Asset queries go to the live backend first. When the backend is unavailable
the last stored snapshot is served instead, tagged ``stale`` with its age.
History queries only read the store.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from w3hub.chains.base import Asset, ChainClient
from w3hub.chains.registry import ChainRegistry
from w3hub.exceptions import BackendUnavailable, InvalidAddress, NotFound
from w3hub.models import WatchTarget
from w3hub.services.snapshot_store import AssetSnapshotStore, Snapshot, TransactionPage
from w3hub.utils.helpers import age_seconds

logger = logging.getLogger(__name__)

SOURCE_LIVE = "live"
SOURCE_STALE = "stale"


@dataclass
class AssetView:
    chain: str
    address: str
    assets: List[Asset]
    source: str
    as_of: datetime
    error: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.source == SOURCE_STALE

    @property
    def age_seconds(self) -> float:
        return age_seconds(self.as_of)


@dataclass
class BalanceView:
    chain: str
    address: str
    symbol: str
    balance: Decimal
    source: str
    as_of: datetime


@dataclass
class HistoryView:
    target: WatchTarget
    page: TransactionPage


class QueryFacade:
    """Live-or-stale asset lookups and stored transaction history."""

    def __init__(
        self,
        registry: ChainRegistry,
        store: AssetSnapshotStore,
        stale_max_age_seconds: float = 0,
    ):
        self.registry = registry
        self.store = store
        self.stale_max_age_seconds = stale_max_age_seconds

    def _client(self, chain: str, address: str) -> tuple[ChainClient, str]:
        """Resolve the backend and validate the address before any I/O."""
        chain = (chain or "").strip().lower()
        client = self.registry.require(chain)
        if not client.validate_address(address):
            raise InvalidAddress(f"'{address}' is not a valid {chain} address", chain=chain, address=address)
        return client, client.normalize_address(address)

    async def _fallback(self, chain: str, address: str, error: BackendUnavailable) -> Snapshot:
        snapshot = await self.store.get_snapshot(chain, address)
        if snapshot is None:
            raise error
        age = age_seconds(snapshot.as_of)
        if self.stale_max_age_seconds and age > self.stale_max_age_seconds:
            raise BackendUnavailable(
                f"{error.message}; stored snapshot is {age:.0f}s old",
                chain=chain,
                address=address,
            ) from error
        logger.info(f"Serving stale snapshot for {chain}:{address} ({age:.0f}s old): {error}")
        return snapshot

    async def get_assets(self, chain: str, address: str) -> AssetView:
        """
        Current assets of an address.

        Raises:
            UnknownChain: no backend for ``chain``
            InvalidAddress: malformed address
            BackendUnavailable: backend down and nothing stored to fall back on
        """
        client, address = self._client(chain, address)
        try:
            assets = await client.get_assets(address)
        except BackendUnavailable as e:
            snapshot = await self._fallback(client.chain_id, address, e)
            return AssetView(
                chain=client.chain_id,
                address=address,
                assets=snapshot.assets,
                source=SOURCE_STALE,
                as_of=snapshot.as_of,
                error=e.message,
            )
        return AssetView(
            chain=client.chain_id,
            address=address,
            assets=assets,
            source=SOURCE_LIVE,
            as_of=datetime.utcnow(),
        )

    async def get_balance(self, chain: str, address: str) -> BalanceView:
        """Native coin balance, with the same stale fallback as ``get_assets``."""
        client, address = self._client(chain, address)
        try:
            balance = await client.get_balance(address)
        except BackendUnavailable as e:
            snapshot = await self._fallback(client.chain_id, address, e)
            native = next((a for a in snapshot.assets if a.contract == "native"), None)
            return BalanceView(
                chain=client.chain_id,
                address=address,
                symbol=native.symbol if native else client.native_symbol,
                balance=native.quantity if native else Decimal(0),
                source=SOURCE_STALE,
                as_of=snapshot.as_of,
            )
        return BalanceView(
            chain=client.chain_id,
            address=address,
            symbol=client.native_symbol,
            balance=balance,
            source=SOURCE_LIVE,
            as_of=datetime.utcnow(),
        )

    async def get_asset_history(self, target_id: int, limit: int = 50, offset: int = 0) -> HistoryView:
        """Stored transactions of a watch target, newest first."""
        target = await self.store.get_target(target_id)
        if target is None:
            raise NotFound(f"Watch target {target_id} not found")
        page = await self.store.list_transactions(target.chain, target.address, limit=limit, offset=offset)
        return HistoryView(target=target, page=page)

"""
Pytest Configuration and Fixtures
"""
import asyncio
import sys
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

import pytest
from fastapi_cache import FastAPICache
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from w3hub.chains.base import Asset, ChainClient, Transaction  # noqa: E402
from w3hub.chains.registry import ChainRegistry  # noqa: E402
from w3hub.database import Base  # noqa: E402
from w3hub.exceptions import InvalidAddress  # noqa: E402
from w3hub.services.snapshot_store import AssetSnapshotStore  # noqa: E402

ADDR_A = "0x" + "a" * 40
ADDR_B = "0x" + "b" * 40
ADDR_C = "0x" + "c" * 40


def make_asset(address: str, symbol: str, quantity, chain: str = "ethereum", contract: str = "native") -> Asset:
    return Asset(chain=chain, address=address, symbol=symbol, quantity=Decimal(str(quantity)), contract=contract)


def make_tx(tx_hash: str, block: int, address: str = ADDR_A, amount="1", chain: str = "ethereum",
            timestamp: datetime = None) -> Transaction:
    return Transaction(
        chain=chain,
        hash=tx_hash,
        from_address="0x" + "f" * 40,
        to_address=address,
        amount=Decimal(str(amount)),
        timestamp=timestamp or datetime.utcnow(),
        block_height=block,
        symbol="ETH",
    )


class FakeChainClient(ChainClient):
    """
    Scriptable in-memory backend.

    ``asset_script[address]`` is consumed one entry per ``get_assets`` call;
    an entry is either a list of assets or an exception to raise. The last
    entry repeats once the script runs out.
    """

    def __init__(self, chain_id: str = "ethereum", streaming: bool = False):
        self.chain_id = chain_id
        self.native_symbol = "ETH"
        self.streaming = streaming
        self.asset_script: Dict[str, list] = defaultdict(list)
        self.transactions: Dict[str, List[Transaction]] = defaultdict(list)
        self.streams: Dict[str, asyncio.Queue] = defaultdict(asyncio.Queue)
        self.asset_calls: Dict[str, int] = defaultdict(int)
        self.open_streams = 0
        self.hang = False
        self.closed = False

    @property
    def supports_streaming(self) -> bool:
        return self.streaming

    def validate_address(self, address: str) -> bool:
        return bool(address) and address.startswith("0x")

    def normalize_address(self, address: str) -> str:
        return address.strip().lower()

    def _check(self, address: str):
        if not self.validate_address(address):
            raise InvalidAddress(f"bad address {address}", chain=self.chain_id, address=address)

    async def get_balance(self, address: str) -> Decimal:
        assets = await self.get_assets(address)
        native = [a for a in assets if a.contract == "native"]
        return native[0].quantity if native else Decimal(0)

    async def get_assets(self, address: str) -> List[Asset]:
        self._check(address)
        self.asset_calls[address] += 1
        if self.hang:
            await asyncio.sleep(3600)
        script = self.asset_script[address]
        entry = script.pop(0) if len(script) > 1 else (script[0] if script else [])
        if isinstance(entry, Exception):
            raise entry
        return list(entry)

    async def get_transactions(self, address, from_time, to_time) -> List[Transaction]:
        self._check(address)
        txs = [t for t in self.transactions[address] if from_time <= t.timestamp < to_time]
        return sorted(txs, key=lambda t: t.ordering_key)

    async def watch_address(self, address: str):
        self._check(address)
        queue = self.streams[address]
        self.open_streams += 1
        try:
            while True:
                yield await queue.get()
        finally:
            self.open_streams -= 1

    async def aclose(self):
        self.closed = True


class RecordingNotifier:
    """Collects published events instead of delivering them."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def of_kind(self, kind):
        return [e for e in self.events if e.kind == kind]


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def anyio_backend():
    """Specify async backend"""
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_response_cache():
    """FastAPICache.init is a no-op once initialized; reset it around each test"""
    FastAPICache.reset()
    yield
    FastAPICache.reset()


# ============== Database ==============

@pytest.fixture
async def db_engine(tmp_path):
    """Create test database engine on a temp file"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    import w3hub.models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_maker):
    return AssetSnapshotStore(session_maker)


# ============== Chains ==============

@pytest.fixture
def fake_client():
    return FakeChainClient()


@pytest.fixture
def registry(fake_client):
    registry = ChainRegistry()
    registry.register("ethereum", fake_client)
    return registry


@pytest.fixture
def notifier():
    return RecordingNotifier()

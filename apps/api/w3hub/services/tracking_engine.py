"""
Address tracking engine.

Owns one watch per active (chain, address) WatchTarget. Each watch runs a
poll loop and, when the backend offers one, a live-stream consumer:

- Poll: fetch assets and recent transactions, diff against the stored
  snapshot, persist, then hand detected alerts to the notifier.
- Stream: append each delivered transaction and alert on unseen hashes.

Both paths of one watch share a lock, so alerts for an address are emitted
in detection order and a hash seen by both paths is alerted once.

Transient errors (BackendUnavailable, StorageFailure) are absorbed with
exponential backoff and surface only as health signals. InvalidAddress stops
the affected watch and is recorded on its target. The whole engine stops
when the shutdown event it was constructed with is set.
"""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from w3hub.chains.base import ChainClient, Transaction
from w3hub.chains.registry import ChainRegistry
from w3hub.exceptions import BackendUnavailable, InvalidAddress, StorageFailure
from w3hub.models import WatchTarget
from w3hub.services.activity_detector import ActivityDetector, AlertEvent
from w3hub.services.notification_service import NotificationService
from w3hub.services.snapshot_store import AssetSnapshotStore

logger = logging.getLogger(__name__)


class TargetState(str, Enum):
    STARTING = "starting"
    POLLING = "polling"
    STREAMING = "streaming"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class EngineConfig:
    poll_interval: float = 30.0
    max_backoff: float = 300.0
    degraded_after_failures: int = 3
    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.5
    shutdown_grace: float = 10.0
    balance_epsilon: Decimal = Decimal("0.000000001")
    history_lookback: timedelta = timedelta(hours=24)
    # Re-read this much of the previous window so late-indexed blocks are not missed
    cursor_overlap: timedelta = timedelta(minutes=2)

    @classmethod
    def from_settings(cls, settings) -> "EngineConfig":
        return cls(
            poll_interval=settings.poll_interval_seconds,
            max_backoff=settings.max_backoff_seconds,
            degraded_after_failures=settings.degraded_after_failures,
            storage_retry_attempts=settings.storage_retry_attempts,
            storage_retry_base_delay=settings.storage_retry_base_delay,
            shutdown_grace=settings.shutdown_grace_seconds,
            balance_epsilon=settings.balance_epsilon,
            history_lookback=timedelta(hours=settings.history_lookback_hours),
        )

    def backoff(self, failures: int) -> float:
        """Poll interval doubled per consecutive failure, capped at max_backoff."""
        if failures <= 0:
            return self.poll_interval
        return min(self.poll_interval * (2 ** failures), self.max_backoff)


@dataclass
class TargetWatch:
    """Runtime state of one (chain, address) watch."""

    chain: str
    address: str
    target_id: Optional[int]
    created_at: datetime
    synced: bool = False
    state: TargetState = TargetState.STARTING
    streaming: bool = False
    consecutive_failures: int = 0
    storage_failures: int = 0
    fault: Optional[str] = None
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    tx_cursor: Optional[datetime] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.chain, self.address)

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self.tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "chain": self.chain,
            "address": self.address,
            "state": self.state.value,
            "streaming": self.streaming,
            "consecutive_failures": self.consecutive_failures,
            "storage_failures": self.storage_failures,
            "fault": self.fault,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class TrackingEngine:
    """Reconciles on-chain state of every active WatchTarget into the store."""

    def __init__(
        self,
        registry: ChainRegistry,
        store: AssetSnapshotStore,
        notifier: NotificationService,
        config: Optional[EngineConfig] = None,
        shutdown: Optional[asyncio.Event] = None,
    ):
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self.config = config or EngineConfig()
        self.detector = ActivityDetector(self.config.balance_epsilon)
        self.shutdown = shutdown or asyncio.Event()

        self._watches: Dict[Tuple[str, str], TargetWatch] = {}
        self._lock = asyncio.Lock()
        self._supervisor: Optional[asyncio.Task] = None
        self._accepting = True
        self._stopped = asyncio.Event()
        self.storage_degraded = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start watches for all active targets and the reconciliation loop."""
        if self._supervisor is not None:
            return
        try:
            await self.sync_targets()
        except StorageFailure as e:
            self.storage_degraded = True
            logger.error(f"Initial target sync failed: {e}")
        self._supervisor = asyncio.create_task(self._supervise(), name="w3hub-engine-supervisor")
        logger.info(f"🔄 Tracking engine started (poll every {self.config.poll_interval}s)")

    async def _supervise(self):
        """Re-converge on the stored WatchTarget set every cycle until shutdown."""
        while not self.shutdown.is_set():
            try:
                await asyncio.wait_for(self.shutdown.wait(), timeout=self.config.poll_interval)
            except asyncio.TimeoutError:
                pass
            if self.shutdown.is_set():
                break
            try:
                await self.sync_targets()
                self.storage_degraded = False
            except StorageFailure as e:
                self.storage_degraded = True
                logger.error(f"Target sync failed: {e}")
        await self.stop()

    async def stop(self):
        """
        Cancel every watch task and stream subscription, wait up to the grace
        period for them to unwind, then mark all targets inactive.
        """
        if not self._accepting:
            # Already stopping; wait for that call to finish
            await self._stopped.wait()
            return
        self._accepting = False
        self.shutdown.set()

        current = asyncio.current_task()
        if self._supervisor is not None and self._supervisor is not current:
            self._supervisor.cancel()

        async with self._lock:
            watches = list(self._watches.values())
            tasks = [t for w in watches for t in w.tasks if not t.done()]
            for w in watches:
                if w.state != TargetState.STOPPED:
                    w.state = TargetState.STOPPING
            for t in tasks:
                t.cancel()

            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_grace)
                if pending:
                    logger.warning(f"⚠️ Abandoning {len(pending)} watch tasks after {self.config.shutdown_grace}s grace")

            for w in watches:
                w.state = TargetState.STOPPED
                w.streaming = False

        try:
            await self.store.deactivate_all()
        except StorageFailure as e:
            logger.error(f"Failed to deactivate targets on shutdown: {e}")

        self._stopped.set()
        logger.info(f"⏹️ Tracking engine stopped ({len(watches)} watches)")

    async def wait_stopped(self):
        await self._stopped.wait()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    # ------------------------------------------------------------------
    # Target management
    # ------------------------------------------------------------------

    async def track_assets(self, chain: str, addresses: Iterable[str]) -> Dict[str, List[str]]:
        """
        Start watching each address not already watched on the chain.

        Raises UnknownChain before creating anything when no backend is
        registered for ``chain``. Repeated calls are idempotent.
        """
        chain = (chain or "").strip().lower()
        client = self.registry.require(chain)
        if not self._accepting:
            raise RuntimeError("Tracking engine is stopped")

        result: Dict[str, List[str]] = {"started": [], "already_watched": []}
        for raw in dict.fromkeys(addresses):
            address = client.normalize_address(raw)
            async with self._lock:
                existing = self._watches.get((chain, address))
                if existing is not None and existing.is_running:
                    result["already_watched"].append(address)
                    continue
                target, _ = await self._with_storage_retry(
                    lambda: self.store.add_target(chain, address), f"register {chain}:{address}"
                )
                self._start_watch(target, client)
                result["started"].append(address)
        return result

    async def untrack(self, chain: str, address: str) -> bool:
        """Deactivate a target and stop its watch. Returns False if it was not active."""
        chain = (chain or "").strip().lower()
        client, found = self.registry.resolve(chain)
        if found:
            address = client.normalize_address(address)
        deactivated = await self.store.deactivate_target(chain, address)
        async with self._lock:
            watch = self._watches.pop((chain, address), None)
        if watch is not None:
            await self._cancel_watch(watch)
            logger.info(f"🛑 Stopped watching {chain}:{address}")
        return deactivated or watch is not None

    async def sync_targets(self):
        """Converge running watches to the stored set of active targets."""
        targets = await self._with_storage_retry(
            lambda: self.store.list_targets(active_only=True), "list active targets"
        )
        desired = {(t.chain, t.address): t for t in targets}

        async with self._lock:
            if not self._accepting:
                return
            stale = [w for key, w in self._watches.items() if key not in desired]
            for watch in stale:
                del self._watches[watch.key]

            for key, target in desired.items():
                watch = self._watches.get(key)
                if watch is not None and watch.is_running:
                    continue
                client, found = self.registry.resolve(target.chain)
                if not found:
                    logger.warning(f"No backend for chain '{target.chain}', target {target.address} not started")
                    continue
                self._start_watch(target, client)

        for watch in stale:
            await self._cancel_watch(watch)

    def _start_watch(self, target: WatchTarget, client: ChainClient):
        """Create the task(s) for a target. Caller holds ``self._lock``."""
        watch = TargetWatch(
            chain=target.chain,
            address=target.address,
            target_id=target.id,
            created_at=target.created_at or datetime.utcnow(),
            synced=target.last_synced_at is not None,
        )
        self._spawn_tasks(watch, client)
        self._watches[watch.key] = watch
        logger.info(f"👀 Watching {watch.chain}:{watch.address} (target #{watch.target_id})")

    def _spawn_tasks(self, watch: TargetWatch, client: ChainClient):
        label = f"{watch.chain}:{watch.address}"
        watch.tasks = [asyncio.create_task(self._poll_loop(watch), name=f"poll-{label}")]
        if client.supports_streaming:
            watch.tasks.append(asyncio.create_task(self._stream_loop(watch), name=f"stream-{label}"))

    async def _cancel_tasks(self, watch: TargetWatch):
        current = asyncio.current_task()
        tasks = [t for t in watch.tasks if not t.done() and t is not current]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self.config.shutdown_grace)
        watch.streaming = False

    async def _cancel_watch(self, watch: TargetWatch):
        await self._cancel_tasks(watch)
        watch.state = TargetState.STOPPED

    async def replace_chain(self, chain: str, client: ChainClient) -> Optional[ChainClient]:
        """
        Swap the backend of a chain while its watches run.

        Each running watch on the chain has its poll and stream tasks
        restarted on ``client``; snapshot, cursor and failure counters carry
        over. The replaced client is closed once no task holds it, and
        returned.
        """
        chain = (chain or "").strip().lower()
        async with self._lock:
            previous = self.registry.register(chain, client)
            moved = [w for w in self._watches.values() if w.chain == chain and w.is_running]
            for watch in moved:
                await self._cancel_tasks(watch)
                if self._accepting:
                    self._spawn_tasks(watch, client)

        if previous is not None and previous is not client:
            try:
                await previous.aclose()
            except Exception as e:
                logger.warning(f"Failed to close replaced {chain} backend: {e}")
        logger.info(f"🔁 {chain} backend replaced, {len(moved)} watches moved")
        return previous

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    async def _poll_loop(self, watch: TargetWatch):
        while True:
            delay = self.config.poll_interval
            try:
                client = self._client_for(watch)
                await self._poll_once(watch, client)
            except asyncio.CancelledError:
                raise
            except InvalidAddress as e:
                await self._fail_permanently(watch, e)
                return
            except BackendUnavailable as e:
                delay = await self._record_failure(watch, e)
            except StorageFailure as e:
                watch.storage_failures += 1
                self.storage_degraded = True
                delay = await self._record_failure(watch, e)
            except Exception as e:
                logger.exception(f"Unexpected error polling {watch.chain}:{watch.address}")
                delay = await self._record_failure(watch, e)
            else:
                await self._record_success(watch)
            await asyncio.sleep(delay)

    def _client_for(self, watch: TargetWatch) -> ChainClient:
        client, found = self.registry.resolve(watch.chain)
        if not found:
            raise BackendUnavailable(f"No backend registered for '{watch.chain}'", chain=watch.chain)
        return client

    async def _poll_once(self, watch: TargetWatch, client: ChainClient):
        window_end = datetime.utcnow()
        window_start = watch.tx_cursor or (watch.created_at - self.config.history_lookback)

        assets = await client.get_assets(watch.address)
        transactions = await client.get_transactions(watch.address, window_start, window_end)

        async with watch.lock:
            baseline = not watch.synced
            previous = await self._with_storage_retry(
                lambda: self.store.get_latest(watch.chain, watch.address), "read snapshot", watch
            )
            known = await self._with_storage_retry(
                lambda: self.store.known_hashes(watch.chain, [tx.hash for tx in transactions]),
                "read known hashes",
                watch,
            )

            events: List[AlertEvent] = []
            if not baseline:
                events.extend(self.detector.detect(previous, assets, watch.chain, watch.address))
                events.extend(self.detector.detect_transactions(transactions, known, watch.chain, watch.address))

            await self._with_storage_retry(
                lambda: self.store.upsert(watch.chain, watch.address, assets), "write snapshot", watch
            )
            await self._with_storage_retry(
                lambda: self.store.append_transactions(watch.chain, watch.address, transactions),
                "append transactions",
                watch,
            )

            watch.synced = True
            watch.tx_cursor = max(window_end - self.config.cursor_overlap, window_start)
            if baseline:
                logger.info(
                    f"📸 Baseline for {watch.chain}:{watch.address}: "
                    f"{len(assets)} assets, {len(transactions)} transactions"
                )
            self._emit(events)

    # ------------------------------------------------------------------
    # Stream path
    # ------------------------------------------------------------------

    async def _stream_loop(self, watch: TargetWatch):
        failures = 0
        while True:
            try:
                client = self._client_for(watch)
                async with aclosing(client.watch_address(watch.address)) as stream:
                    watch.streaming = True
                    if watch.state == TargetState.POLLING:
                        await self._transition(watch, TargetState.STREAMING)
                    async for tx in stream:
                        await self._ingest_streamed(watch, tx)
                        failures = 0
            except asyncio.CancelledError:
                raise
            except InvalidAddress as e:
                await self._fail_permanently(watch, e)
                return
            except NotImplementedError:
                watch.streaming = False
                return
            except (BackendUnavailable, StorageFailure) as e:
                failures += 1
                logger.warning(f"Stream for {watch.chain}:{watch.address} interrupted: {e}")
            except Exception:
                failures += 1
                logger.exception(f"Unexpected stream error for {watch.chain}:{watch.address}")
            finally:
                watch.streaming = False
            await asyncio.sleep(self.config.backoff(failures))

    async def _ingest_streamed(self, watch: TargetWatch, tx: Transaction):
        async with watch.lock:
            known = await self._with_storage_retry(
                lambda: self.store.known_hashes(watch.chain, [tx.hash]), "read known hashes", watch
            )
            events = self.detector.detect_transactions([tx], known, watch.chain, watch.address)
            await self._with_storage_retry(
                lambda: self.store.append_transactions(watch.chain, watch.address, [tx]),
                "append streamed transaction",
                watch,
            )
            self._emit(events)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(self, events: List[AlertEvent]):
        if not self._accepting:
            return
        for event in events:
            logger.info(f"🔔 {event.kind.value} on {event.chain}:{event.address}")
            self.notifier.publish(event)

    async def _with_storage_retry(
        self,
        op: Callable[[], Awaitable[Any]],
        what: str,
        watch: Optional[TargetWatch] = None,
    ) -> Any:
        """Run a store call, retrying StorageFailure with bounded exponential backoff."""
        attempts = max(self.config.storage_retry_attempts, 1)
        for attempt in range(attempts):
            try:
                return await op()
            except StorageFailure as e:
                if attempt == attempts - 1:
                    label = f" for {watch.chain}:{watch.address}" if watch else ""
                    logger.error(f"💾 Storage failure persisted after {attempts} attempts ({what}{label}): {e}")
                    raise
                await asyncio.sleep(self.config.storage_retry_base_delay * (2 ** attempt))

    async def _record_failure(self, watch: TargetWatch, error: Exception) -> float:
        watch.consecutive_failures += 1
        watch.last_error = str(error)
        delay = self.config.backoff(watch.consecutive_failures)
        logger.warning(
            f"{watch.chain}:{watch.address} poll failed "
            f"({watch.consecutive_failures}x, retry in {delay:.1f}s): {error}"
        )
        if watch.consecutive_failures >= self.config.degraded_after_failures and watch.state != TargetState.DEGRADED:
            watch.state = TargetState.DEGRADED
            logger.warning(f"⚠️ {watch.chain}:{watch.address} degraded")
            await self._persist_state(watch)
        return delay

    async def _record_success(self, watch: TargetWatch):
        watch.consecutive_failures = 0
        watch.storage_failures = 0
        watch.last_error = None
        watch.last_success_at = datetime.utcnow()
        healthy = TargetState.STREAMING if watch.streaming else TargetState.POLLING
        if watch.state != healthy:
            if watch.state == TargetState.DEGRADED:
                logger.info(f"✅ {watch.chain}:{watch.address} recovered")
            watch.state = healthy
            await self._persist_state(watch)

    async def _transition(self, watch: TargetWatch, state: TargetState):
        if watch.state == state:
            return
        watch.state = state
        await self._persist_state(watch)

    async def _persist_state(self, watch: TargetWatch):
        try:
            await self.store.set_target_state(watch.chain, watch.address, watch.state.value)
        except StorageFailure as e:
            logger.debug(f"Could not persist state of {watch.chain}:{watch.address}: {e}")

    async def _fail_permanently(self, watch: TargetWatch, error: Exception):
        """Terminal fault: stop this watch only and record why."""
        if watch.fault is not None:
            return
        watch.fault = str(error)
        watch.state = TargetState.STOPPED
        watch.streaming = False
        logger.error(f"❌ {watch.chain}:{watch.address} stopped: {error}")
        try:
            await self.store.deactivate_target(watch.chain, watch.address, fault=watch.fault)
        except StorageFailure as e:
            logger.error(f"Failed to record fault for {watch.chain}:{watch.address}: {e}")

        current = asyncio.current_task()
        for t in watch.tasks:
            if t is not current and not t.done():
                t.cancel()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_watch(self, chain: str, address: str) -> Optional[TargetWatch]:
        return self._watches.get((chain, address))

    def active_watch_count(self) -> int:
        return sum(1 for w in self._watches.values() if w.is_running)

    def status(self) -> List[Dict[str, Any]]:
        return [w.to_dict() for w in self._watches.values()]

    def health(self) -> Dict[str, Any]:
        degraded = [
            f"{w.chain}:{w.address}" for w in self._watches.values() if w.state == TargetState.DEGRADED
        ]
        faulted = [
            f"{w.chain}:{w.address}" for w in self._watches.values() if w.fault is not None
        ]
        if self.is_stopped:
            overall = "stopped"
        elif degraded or self.storage_degraded:
            overall = "degraded"
        else:
            overall = "healthy"
        return {
            "status": overall,
            "active_watches": self.active_watch_count(),
            "degraded": degraded,
            "faulted": faulted,
            "storage_degraded": self.storage_degraded,
            "chains": self.registry.chains(),
        }

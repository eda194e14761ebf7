"""
Central notification service broadcasting alert events to delivery backends.

Every event goes to every available backend independently. Delivery runs in
background tasks, so a slow or failing backend never blocks detection or the
other backends. Delivery is at-least-once; a short dedupe window drops
events redelivered after a retry.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from w3hub.services.activity_detector import AlertEvent

logger = logging.getLogger(__name__)

DEDUPE_WINDOW = 10000


class AlertBackend(Protocol):
    name: str

    @property
    def is_available(self) -> bool: ...

    async def send(self, event: AlertEvent) -> Dict[str, Any]: ...


class NotificationService:
    """Fire-and-forget fan-out with per-backend failure isolation."""

    def __init__(self, backends: Sequence[AlertBackend] = (), enabled: bool = True):
        self.backends: List[AlertBackend] = list(backends)
        self.enabled = enabled
        self._pending: Set[asyncio.Task] = set()
        self._dedupe: Set[str] = set()
        self._dedupe_q: deque = deque(maxlen=DEDUPE_WINDOW)

        self.summary = {
            "published": 0,
            "dedupe": 0,
            "sent": 0,
            "failed": 0,
        }

    def _remember(self, key: str) -> bool:
        if key in self._dedupe:
            return False
        if len(self._dedupe_q) == self._dedupe_q.maxlen:
            self._dedupe.discard(self._dedupe_q[0])
        self._dedupe.add(key)
        self._dedupe_q.append(key)
        return True

    def publish(self, event: AlertEvent) -> None:
        """Schedule delivery of an event to all backends and return immediately."""
        if not self.enabled:
            return
        key = event.dedupe_key
        if key is not None and not self._remember(key):
            self.summary["dedupe"] += 1
            return

        self.summary["published"] += 1
        for backend in self.backends:
            if not backend.is_available:
                continue
            task = asyncio.create_task(self._deliver(backend, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, backend: AlertBackend, event: AlertEvent):
        try:
            result = await backend.send(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.summary["failed"] += 1
            logger.error(f"❌ {backend.name} delivery failed for {event.chain}:{event.address}: {e}")
            return

        if result and not result.get("success", True):
            self.summary["failed"] += 1
            logger.warning(f"{backend.name} delivery skipped: {result.get('error')}")
        else:
            self.summary["sent"] += 1

    async def aclose(self, grace_seconds: float = 5.0):
        """Wait for in-flight deliveries, then cancel whatever is left."""
        pending = list(self._pending)
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning(f"Abandoned {len(still_pending)} undelivered notifications on shutdown")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.summary,
            "pending": self.pending_count,
            "backends": {b.name: b.is_available for b in self.backends},
            "enabled": self.enabled,
        }


def build_notification_service(settings, extra_backends: Optional[Sequence[AlertBackend]] = None) -> NotificationService:
    """Wire email, Telegram and any extra backends from settings."""
    from w3hub.services.email_service import EmailService
    from w3hub.services.telegram_notifier import TelegramNotifier

    backends: List[AlertBackend] = [EmailService(settings), TelegramNotifier(settings)]
    backends.extend(extra_backends or [])
    return NotificationService(backends, enabled=settings.notification_enabled)

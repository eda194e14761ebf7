"""Services package."""
from w3hub.services.activity_detector import ActivityDetector, AlertEvent, AlertKind
from w3hub.services.snapshot_store import AssetSnapshotStore, Snapshot, TransactionPage
from w3hub.services.email_service import EmailService
from w3hub.services.telegram_notifier import TelegramNotifier
from w3hub.services.websocket_manager import ConnectionManager, manager
from w3hub.services.notification_service import NotificationService, build_notification_service
from w3hub.services.tracking_engine import EngineConfig, TargetState, TrackingEngine
from w3hub.services.query_service import AssetView, BalanceView, HistoryView, QueryFacade

__all__ = [
    "ActivityDetector",
    "AlertEvent",
    "AlertKind",
    "AssetSnapshotStore",
    "Snapshot",
    "TransactionPage",
    "EmailService",
    "TelegramNotifier",
    "ConnectionManager",
    "manager",
    "NotificationService",
    "build_notification_service",
    "EngineConfig",
    "TargetState",
    "TrackingEngine",
    "AssetView",
    "BalanceView",
    "HistoryView",
    "QueryFacade",
]

"""Database models package."""
from w3hub.models.watch_target import WatchTarget
from w3hub.models.asset_snapshot import AssetSnapshot
from w3hub.models.transaction import TransactionRecord

__all__ = [
    "WatchTarget",
    "AssetSnapshot",
    "TransactionRecord",
]

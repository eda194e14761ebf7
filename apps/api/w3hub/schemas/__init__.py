"""Pydantic schemas package."""
from w3hub.schemas.asset import (
    AssetResponse,
    AssetListResponse,
    BalanceResponse,
)
from w3hub.schemas.transaction import (
    TransactionResponse,
    TransactionListResponse,
)
from w3hub.schemas.tracking import (
    TrackRequest,
    TrackResponse,
    WatchTargetResponse,
    WatchTargetListResponse,
)
from w3hub.schemas.common import (
    ErrorResponse,
)

__all__ = [
    # Asset
    "AssetResponse",
    "AssetListResponse",
    "BalanceResponse",
    # Transaction
    "TransactionResponse",
    "TransactionListResponse",
    # Tracking
    "TrackRequest",
    "TrackResponse",
    "WatchTargetResponse",
    "WatchTargetListResponse",
    # Common
    "ErrorResponse",
]

"""Watch target schemas for the admin tracking API."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from w3hub.utils.validators import validate_chain_id


class TrackRequest(BaseModel):
    """Addresses to start watching on one chain."""

    chain: str = Field(..., min_length=1, max_length=50)
    addresses: List[str] = Field(..., min_length=1, max_length=500)

    @field_validator("chain")
    @classmethod
    def normalize_chain(cls, v: str) -> str:
        return validate_chain_id(v)

    @field_validator("addresses")
    @classmethod
    def strip_addresses(cls, v: List[str]) -> List[str]:
        cleaned = [a.strip() for a in v if a and a.strip()]
        if not cleaned:
            raise ValueError("at least one non-empty address is required")
        return cleaned


class TrackResponse(BaseModel):
    chain: str
    started: List[str]
    already_watched: List[str]


class WatchTargetResponse(BaseModel):
    """Stored watch target, joined with live engine state when running."""

    id: int
    chain: str
    address: str
    is_active: bool
    state: str
    fault: Optional[str] = None
    created_at: datetime
    last_synced_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    consecutive_failures: int = 0
    streaming: bool = False

    class Config:
        from_attributes = True


class WatchTargetListResponse(BaseModel):
    items: List[WatchTargetResponse]
    total: int

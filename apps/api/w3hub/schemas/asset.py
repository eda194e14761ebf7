"""Asset and balance schemas."""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class AssetResponse(BaseModel):
    """One balance held by an address."""

    symbol: str
    contract: str = Field(description="Token contract, or 'native' for the chain coin")
    quantity: Decimal = Field(description="Exact decimals-adjusted amount, serialized as a string")
    last_updated: datetime

    class Config:
        from_attributes = True


class AssetListResponse(BaseModel):
    """Assets of an address, either fetched live or served from the last snapshot."""

    chain: str
    address: str
    source: Literal["live", "stale"]
    as_of: datetime
    age_seconds: float = Field(ge=0)
    error: Optional[str] = Field(default=None, description="Backend error that forced a stale answer")
    items: List[AssetResponse]
    total: int

    @classmethod
    def from_view(cls, view) -> "AssetListResponse":
        return cls(
            chain=view.chain,
            address=view.address,
            source=view.source,
            as_of=view.as_of,
            age_seconds=max(view.age_seconds, 0.0),
            error=view.error,
            items=[AssetResponse.model_validate(a) for a in view.assets],
            total=len(view.assets),
        )


class BalanceResponse(BaseModel):
    """Native coin balance of an address."""

    chain: str
    address: str
    symbol: str
    balance: Decimal
    source: Literal["live", "stale"]
    as_of: datetime

    class Config:
        from_attributes = True

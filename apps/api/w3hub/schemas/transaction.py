"""Transaction history schemas."""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class TransactionResponse(BaseModel):
    """A stored transaction touching a watched address."""

    hash: str
    from_address: str
    to_address: str
    amount: Decimal
    symbol: Optional[str] = None
    timestamp: datetime
    block_height: int

    class Config:
        from_attributes = True


class TransactionListResponse(BaseModel):
    """Paginated transaction history of one watch target, newest first."""

    target_id: int
    chain: str
    address: str
    items: List[TransactionResponse]
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def from_view(cls, view) -> "TransactionListResponse":
        page = view.page
        return cls(
            target_id=view.target.id,
            chain=view.target.chain,
            address=view.target.address,
            items=[TransactionResponse.model_validate(tx) for tx in page.items],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            has_more=page.has_more,
        )

"""Asset and transaction history API router."""
from fastapi import APIRouter, Depends, Path, Query, Request, Response

from w3hub.cache import cache, custom_key_builder
from w3hub.dependencies import get_facade
from w3hub.schemas.asset import AssetListResponse, BalanceResponse
from w3hub.schemas.common import ErrorResponse
from w3hub.schemas.transaction import TransactionListResponse
from w3hub.services.query_service import QueryFacade

router = APIRouter(prefix="/assets", tags=["Assets"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed address"},
    404: {"model": ErrorResponse, "description": "Unknown chain or target"},
    503: {"model": ErrorResponse, "description": "Backend down and no usable snapshot"},
}


# Declared before /{chain}/{address} so "history" is never read as a chain id
@router.get("/history/{target_id}", response_model=TransactionListResponse, responses={404: ERROR_RESPONSES[404]})
@cache(expire=15, key_builder=custom_key_builder)  # 15 second cache
async def get_asset_history(
    request: Request,
    response: Response,
    target_id: int = Path(..., ge=1, description="Watch target ID"),
    limit: int = Query(default=50, ge=1, le=1000, description="Number of transactions to return"),
    offset: int = Query(default=0, ge=0, description="Number of transactions to skip"),
    facade: QueryFacade = Depends(get_facade),
):
    """
    Stored transaction history of a watch target, newest first.

    Only reads what the tracking engine has persisted; no chain backend is
    contacted. Unknown target IDs return 404.
    """
    view = await facade.get_asset_history(target_id, limit=limit, offset=offset)
    return TransactionListResponse.from_view(view)


@router.get("/{chain}/{address}", response_model=AssetListResponse, responses=ERROR_RESPONSES)
async def get_assets(
    chain: str,
    address: str,
    facade: QueryFacade = Depends(get_facade),
):
    """
    Current assets held by an address.

    Fetched live from the chain backend. If the backend is unavailable the
    last stored snapshot is returned with `source: "stale"` and its age.

    - **404**: unknown chain
    - **400**: malformed address
    - **503**: backend down and no stored snapshot
    """
    view = await facade.get_assets(chain, address)
    return AssetListResponse.from_view(view)


@router.get("/{chain}/{address}/balance", response_model=BalanceResponse, responses=ERROR_RESPONSES)
async def get_balance(
    chain: str,
    address: str,
    facade: QueryFacade = Depends(get_facade),
):
    """Native coin balance of an address, with the same stale fallback."""
    view = await facade.get_balance(chain, address)
    return BalanceResponse.model_validate(view)

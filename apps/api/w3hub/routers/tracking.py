"""Watch target management API router. Admin only."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from w3hub.auth import require_admin
from w3hub.dependencies import get_engine
from w3hub.schemas.tracking import (
    TrackRequest,
    TrackResponse,
    WatchTargetListResponse,
    WatchTargetResponse,
)
from w3hub.services.tracking_engine import TrackingEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking", tags=["Tracking"], dependencies=[Depends(require_admin)])


@router.get("", response_model=WatchTargetListResponse)
async def list_targets(
    active_only: bool = False,
    engine: TrackingEngine = Depends(get_engine),
):
    """
    List watch targets with their engine state.

    Requires `X-Admin-Key` header with valid admin API key.
    """
    targets = await engine.store.list_targets(active_only=active_only)
    items = []
    for target in targets:
        item = WatchTargetResponse.model_validate(target)
        watch = engine.get_watch(target.chain, target.address)
        if watch is not None and watch.is_running:
            item.state = watch.state.value
            item.consecutive_failures = watch.consecutive_failures
            item.streaming = watch.streaming
        items.append(item)
    return WatchTargetListResponse(items=items, total=len(items))


@router.post("", response_model=TrackResponse, status_code=status.HTTP_201_CREATED)
async def track_addresses(
    body: TrackRequest,
    engine: TrackingEngine = Depends(get_engine),
):
    """
    Start watching addresses on a chain.

    Already watched addresses are reported and left untouched. An unknown
    chain returns 404 without registering anything.
    """
    result = await engine.track_assets(body.chain, body.addresses)
    logger.info(f"➕ Track request for {body.chain}: {len(result['started'])} started")
    return TrackResponse(chain=body.chain, **result)


@router.delete("/{chain}/{address}", status_code=status.HTTP_204_NO_CONTENT)
async def untrack_address(
    chain: str,
    address: str,
    engine: TrackingEngine = Depends(get_engine),
):
    """Stop watching an address. Stored snapshots and history are kept."""
    if not await engine.untrack(chain, address):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{chain}:{address} is not being tracked",
        )
    return None


@router.get("/status")
async def engine_status(
    request: Request,
    engine: TrackingEngine = Depends(get_engine),
):
    """Engine health, per-watch state and notification delivery counters."""
    notifier = getattr(request.app.state, "notifier", None)
    return {
        "health": engine.health(),
        "watches": engine.status(),
        "notifications": notifier.get_stats() if notifier else None,
    }

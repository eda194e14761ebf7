"""FastAPI dependencies exposing the services built in the app lifespan."""
from fastapi import HTTPException, Request, status

from w3hub.services.query_service import QueryFacade
from w3hub.services.tracking_engine import TrackingEngine


def get_facade(request: Request) -> QueryFacade:
    facade = getattr(request.app.state, "facade", None)
    if facade is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return facade


def get_engine(request: Request) -> TrackingEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return engine

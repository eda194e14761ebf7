"""
W3Hub Asset Tracker API

Watches blockchain addresses, keeps the latest asset snapshot and
transaction history of each in a relational store, and raises alerts when
balances move or new transactions land. Assets are served live with a
stale-snapshot fallback when a chain backend is down.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from w3hub import __version__
from w3hub.cache import close_cache, init_cache
from w3hub.chains import build_registry
from w3hub.config import settings
from w3hub.database import create_tables
from w3hub.exceptions import W3HubError
from w3hub.routers import assets_router, live_router, tracking_router
from w3hub.schemas.common import ErrorResponse
from w3hub.services.notification_service import build_notification_service
from w3hub.services.query_service import QueryFacade
from w3hub.services.snapshot_store import AssetSnapshotStore
from w3hub.services.tracking_engine import EngineConfig, TrackingEngine
from w3hub.services.websocket_manager import manager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def seed_watch_targets(engine: TrackingEngine):
    """Register the addresses configured in WATCH_ADDRESSES."""
    by_chain = {}
    for chain, address in settings.watch_address_list:
        by_chain.setdefault(chain, []).append(address)

    for chain, addresses in by_chain.items():
        try:
            result = await engine.track_assets(chain, addresses)
            logger.info(f"🌱 Seeded {len(result['started'])} {chain} addresses")
        except W3HubError as e:
            logger.error(f"❌ Could not seed {chain} addresses: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("🚀 Starting W3Hub Asset Tracker...")

    await create_tables()
    logger.info("✅ Database tables created")

    await init_cache()

    registry = build_registry(settings)
    store = AssetSnapshotStore()
    notifier = build_notification_service(settings, extra_backends=[manager])
    shutdown = asyncio.Event()
    engine = TrackingEngine(
        registry,
        store,
        notifier,
        config=EngineConfig.from_settings(settings),
        shutdown=shutdown,
    )

    app.state.registry = registry
    app.state.store = store
    app.state.notifier = notifier
    app.state.engine = engine
    app.state.facade = QueryFacade(registry, store, stale_max_age_seconds=settings.stale_max_age_seconds)

    await engine.start()
    await seed_watch_targets(engine)

    logger.info(f"✅ Application started ({len(registry.chains())} chains: {', '.join(registry.chains()) or 'none'})")
    logger.info("📊 API docs available at: http://localhost:8000/docs")

    yield

    # Shutdown
    logger.info("🛑 Shutting down...")
    shutdown.set()
    await engine.stop()
    await notifier.aclose(grace_seconds=settings.shutdown_grace_seconds)
    await registry.aclose()
    await close_cache()
    logger.info("✅ Cleanup complete")


# Create FastAPI application
app = FastAPI(
    title=settings.project_name,
    description="""
## Blockchain Address Tracking

Tracks balances and transactions of watched addresses across EVM chains.

### Features:
- 🔗 **Multi-chain** - one backend per configured chain id
- 📸 **Snapshots** - latest assets per address, served stale when a backend is down
- 🔔 **Alerts** - balance changes and new transactions over email, Telegram and WebSocket
- ⚡ **Redis Caching** - transaction history responses

### Authentication:
Tracking management endpoints require `X-Admin-Key` header with valid API key.
    """,
    version=__version__,
    license_info={
        "name": "MIT",
    },
    lifespan=lifespan,
)

logger.info(f"🔒 CORS Allowed Origins: {settings.cors_origins}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(W3HubError)
async def w3hub_error_handler(request: Request, exc: W3HubError):
    """Map the error taxonomy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    body = ErrorResponse(error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


# Include API routers
app.include_router(assets_router, prefix=settings.api_v1_prefix)
app.include_router(tracking_router, prefix=settings.api_v1_prefix)
app.include_router(live_router, prefix=settings.api_v1_prefix)


# ============== Health Check ==============

@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    engine = getattr(request.app.state, "engine", None)
    engine_health = engine.health() if engine else {"status": "starting"}
    return {
        "status": engine_health["status"],
        "service": "w3hub-asset-tracker",
        "version": __version__,
        "engine": engine_health,
    }


@app.get("/api/v1", tags=["API Info"])
async def api_info():
    """API version and information."""
    return {
        "name": settings.project_name,
        "version": __version__,
        "endpoints": {
            "assets": f"{settings.api_v1_prefix}/assets/{{chain}}/{{address}}",
            "history": f"{settings.api_v1_prefix}/assets/history/{{target_id}}",
            "tracking": f"{settings.api_v1_prefix}/tracking",
        },
        "documentation": "/docs",
        "websocket": f"{settings.api_v1_prefix}/live/alerts",
    }

"""
PyHydrator Server - Main FastAPI Application

Runs one hydration orchestrator for a dashboard and exposes it over HTTP and
WebSocket, so widgets living in other processes or pages share a single cache.

Standard Configuration:
    Environment variables (or .env):
        HY_CUSTOMER_ID=...
        HY_CLIENT_ID=...
        HY_CLIENT_SECRET=...

    Without them the credential gate stays closed until POST /api/credentials.

Routing Structure:
    1. Orchestrator API (prefix: /api):
       - POST   /api/credentials, /api/tokens
       - GET    /api/hydrate/{domain}, /api/latest/{domain}
       - DELETE /api/cache
       - GET    /api/stats, /api/busy

    2. Inbound signals (prefix: /api/signals):
       - GET  /api/signals/
       - POST /api/signals/{signal}

    3. WebSocket streaming (prefix: /ws):
       - WS   /ws/signals

    4. GET /health
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pyhydrator.server.api import data, signals, websockets
from pyhydrator.server.config import settings, SERVER_VERSION
from pyhydrator.server.core import orchestrator_manager

# Configure logging based on HY_DEBUG setting
log_level = logging.DEBUG if settings.debug else logging.INFO
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting PyHydrator Server v{SERVER_VERSION}...")
    logger.info(f"Telemetry API: {settings.data_api_host}")
    logger.info(f"Cache TTL (HY_TTL_MINUTES): {settings.ttl_minutes:g}min, max {settings.max_cache_size} entries")
    logger.info(f"Busy timeout (HY_BUSY_TIMEOUT): {settings.busy_timeout:g}s, "
                f"watchdog (HY_WATCHDOG_TIMEOUT): {settings.watchdog_timeout:g}s")
    logger.info(f"Server listening on {settings.server_host}:{settings.server_port}")

    await orchestrator_manager.initialize(settings, transports=[websockets.transport])

    yield

    # Shutdown
    logger.info("Shutting down PyHydrator Server...")
    await orchestrator_manager.shutdown()


# Create FastAPI application
app = FastAPI(
    title="PyHydrator Server",
    description="Telemetry hydration and cache orchestrator for dashboard widgets",
    version=SERVER_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers (signals before data so /api/signals is not shadowed)
app.include_router(signals.router, prefix="/api/signals", tags=["Signals"])
app.include_router(data.router, prefix="/api", tags=["Orchestrator"])
app.include_router(websockets.router, prefix="/ws", tags=["WebSockets"])


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint.

    Returns:
        - healthy: orchestrator running with credentials set
        - waiting_for_credentials: running, credential gate still closed
        - unhealthy: orchestrator not running
    """
    if not orchestrator_manager.ready:
        return {"status": "unhealthy", "version": SERVER_VERSION}
    orchestrator = orchestrator_manager.get()
    busy = orchestrator.get_busy_state()
    return {
        "status": "healthy" if orchestrator.gate.is_set else "waiting_for_credentials",
        "version": SERVER_VERSION,
        "cache_size": len(orchestrator.cache),
        "inflight": len(orchestrator.inflight),
        "busy": busy.is_visible,
        "busy_domain": busy.current_domain,
        "websocket_clients": len(websockets.manager.active_connections),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pyhydrator.server.main:app",
        host=settings.server_host,
        port=settings.server_port,
    )

"""
Orchestrator REST API

All routes are prefixed with /api (configured in main.py).

Routes:
    - POST   /api/credentials          -> Open the credential gate
    - POST   /api/tokens               -> Rotate tokens (aborts fetches, clears cache)
    - GET    /api/hydrate/{domain}     -> Hydrate a domain (?start=&end=&granularity=)
    - GET    /api/latest/{domain}      -> Latest provide-data payload for a domain
    - DELETE /api/cache                -> Invalidate the cache (?domain=, default all)
    - GET    /api/stats                -> Hit rate, request counters, cache size
    - GET    /api/busy                 -> Busy indicator snapshot

Errors:
    Missing credentials and a hydration lock that never frees up answer
    503, an expired token 401 and any other telemetry API failure 502.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from pyhydrator.exceptions import AuthExpiredError, ConfigurationError, FetchError, LockTimeout
from pyhydrator.models import BusyState, Period, ProvidePayload
from pyhydrator.server.core import orchestrator_manager
from pyhydrator.server.models import (CredentialsRequest, HydrateResponse, InvalidateResponse, StatsResponse,
                                      TokensRequest)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/credentials")
async def set_credentials(body: CredentialsRequest):
    """Supply ingestion credentials; pending fetches resume."""
    orchestrator_manager.get().set_credentials(body.customer_id, body.client_id, body.client_secret)
    return {"status": "ok"}


@router.post("/tokens")
async def update_tokens(body: TokensRequest):
    orchestrator_manager.get().update_tokens(body.tokens)
    return {"status": "ok"}


@router.get("/hydrate/{domain}", response_model=HydrateResponse)
async def hydrate(domain: str,
                  start: str = Query(..., description="Period start (ISO-8601)"),
                  end: str = Query(..., description="Period end (ISO-8601)"),
                  granularity: Optional[str] = Query(None, description="hour, day or month")):
    """Return the totals of a domain for a period, from cache when fresh."""
    try:
        period = Period.create(start, end, granularity)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        items = await orchestrator_manager.get().hydrate_domain(domain, period)
    except (ConfigurationError, LockTimeout) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except AuthExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return HydrateResponse(domain=domain, period_key=period.key, count=len(items), items=items)


@router.get("/latest/{domain}", response_model=ProvidePayload)
async def latest(domain: str):
    """Latest published payload for a domain (for late consumers)."""
    payload = orchestrator_manager.get().bus.latest(domain)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No data published for {domain}")
    return payload


@router.delete("/cache", response_model=InvalidateResponse)
async def invalidate(domain: str = "*"):
    removed = orchestrator_manager.get().invalidate_cache(domain)
    return InvalidateResponse(domain=domain, removed=removed)


@router.get("/stats", response_model=StatsResponse)
async def stats():
    orchestrator = orchestrator_manager.get()
    return StatsResponse(**orchestrator.get_stats(), summary=orchestrator.metrics.summary())


@router.get("/busy", response_model=BusyState)
async def busy():
    return orchestrator_manager.get().get_busy_state()

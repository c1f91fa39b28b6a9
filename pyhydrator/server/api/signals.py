"""
Inbound Signal API

Lets non-WebSocket clients publish the signals a dashboard widget would emit.
All routes are prefixed with /api/signals (configured in main.py).

Routes:
    - GET  /api/signals/           -> Inbound and outbound signal names
    - POST /api/signals/{signal}   -> Publish an inbound signal, body {"payload": {...}}
"""
from fastapi import APIRouter, HTTPException

from pyhydrator.const import INBOUND_SIGNALS, OUTBOUND_SIGNALS
from pyhydrator.server.core import orchestrator_manager
from pyhydrator.server.models import SignalRequest

router = APIRouter()


@router.get("/")
async def list_signals():
    return {"inbound": list(INBOUND_SIGNALS), "outbound": list(OUTBOUND_SIGNALS)}


@router.post("/{signal}", status_code=202)
async def publish_signal(signal: str, body: SignalRequest):
    """Publish an inbound signal; results arrive on /ws/signals."""
    if signal not in INBOUND_SIGNALS:
        raise HTTPException(status_code=400, detail=f"Unsupported signal: {signal}")
    orchestrator_manager.get().bus.publish(signal, body.payload)
    return {"status": "accepted", "signal": signal}

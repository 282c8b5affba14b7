"""Collector and overlay routes: foreground samples, screen state, responses."""

import logging

from fastapi import APIRouter, HTTPException

from ..deps import _dump, _local_timestamp, monitor
from ..monitor import TickResult
from ..schemas import (
    ForegroundResponse,
    ForegroundSampleRequest,
    InterventionResponseRequest,
    ScreenStateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _tick_response(result: TickResult) -> ForegroundResponse:
    return ForegroundResponse(
        session=monitor.session_payload(),
        events=result.event_kinds(),
        interventions=result.interventions,
        poll_interval_s=result.poll_interval_s,
    )


@router.post("/api/foreground", response_model=ForegroundResponse)
async def ingest_foreground(request: ForegroundSampleRequest) -> ForegroundResponse:
    """Feed one foreground sample; returns any interventions to present."""
    result = await monitor.handle_sample(
        request.app_id,
        _local_timestamp(request.timestamp),
        screen_on=request.screen_on,
    )
    return _tick_response(result)


@router.post("/api/screen", response_model=ForegroundResponse)
async def ingest_screen(request: ScreenStateRequest) -> ForegroundResponse:
    """Screen on/off transitions; screen off ends the open session."""
    result = await monitor.handle_screen(request.screen_on, _local_timestamp(request.timestamp))
    return _tick_response(result)


@router.post("/api/interventions/{intervention_id}/response")
async def record_response(intervention_id: str, request: InterventionResponseRequest) -> dict:
    """Record the user's overlay response for a shown intervention."""
    try:
        outcome = await monitor.handle_response(
            intervention_id,
            choice=request.choice,
            response_time_ms=request.response_time_ms,
            interaction_depth=request.interaction_depth,
            feedback=request.feedback,
            now=_local_timestamp(request.timestamp),
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Intervention not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"outcome": _dump(outcome)}


@router.get("/api/session")
async def get_session() -> dict:
    """Return the open session, if any, and the current polling interval."""
    return {
        "session": monitor.session_payload(),
        "screen_on": monitor.screen_on,
        "poll_interval_s": monitor.poll_interval(),
    }

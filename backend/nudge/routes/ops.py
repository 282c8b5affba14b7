"""Operational routes: error channel and manual sweeps."""

from typing import Optional

from fastapi import APIRouter, HTTPException

from ..deps import error_channel, outcomes, scheduler
from ..schemas import OUTCOME_STAGES

router = APIRouter()


@router.get("/api/errors")
async def list_errors(
    limit: int = 100,
    component: Optional[str] = None,
    level: Optional[str] = None,
) -> dict:
    """Recent WARNING+ records reported by engine components."""
    entries = error_channel.list_entries(limit=limit, component=component, level=level)
    return {
        "errors": entries,
        "count": error_channel.count(),
        "total_reported": error_channel.total_reported,
    }


@router.post("/api/errors/reset")
async def reset_errors() -> dict:
    return {"cleared": error_channel.clear()}


@router.post("/api/sweeps/{stage}")
async def run_sweep(stage: str) -> dict:
    """Run one outcome collection sweep immediately."""
    if stage not in OUTCOME_STAGES:
        raise HTTPException(status_code=400, detail=f"Unknown stage: {stage}")
    return await outcomes.run_sweep(stage)


@router.get("/api/jobs")
async def list_jobs() -> dict:
    return {"running": scheduler.running, "jobs": scheduler.status()}

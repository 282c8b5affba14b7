"""Decision explanation queries."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from ..deps import _dump, clock, decision_logger
from ..schemas import OPPORTUNITY_LEVELS

router = APIRouter()


@router.get("/api/decisions")
async def list_decisions(
    limit: int = Query(default=50, ge=1, le=500),
    app: Optional[str] = None,
    opportunity_level: Optional[str] = None,
) -> dict:
    """List recent gate decisions, newest first."""
    if opportunity_level is not None:
        if opportunity_level not in OPPORTUNITY_LEVELS:
            raise HTTPException(status_code=400, detail=f"Unknown opportunity level: {opportunity_level}")
        items = await decision_logger.decisions_by_opportunity(opportunity_level, limit)
    else:
        items = await decision_logger.recent_decisions(limit, app)
    return {"decisions": [_dump(item) for item in items]}


@router.get("/api/decisions/summary")
async def decision_summary(days: int = Query(default=7, ge=1, le=365)) -> dict:
    """Show/skip rates, skip reasons, and burden mitigation over a trailing window."""
    now = clock()
    summary = await decision_logger.decision_summary(now, days)
    summary["burden_mitigation_active"] = await decision_logger.is_burden_mitigation_active(now)
    return summary


@router.get("/api/decisions/{decision_id}")
async def get_decision(decision_id: str) -> dict:
    record = await decision_logger.get(decision_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Decision not found")
    return {"decision": _dump(record)}

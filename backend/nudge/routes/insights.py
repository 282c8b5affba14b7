"""Read-side model state: burden, persona, bandit, and outcome statistics."""

from fastapi import APIRouter, Query

from ..deps import burden, outcomes, persona, rollout, sampler

router = APIRouter()


@router.get("/api/burden")
async def get_burden(force_refresh: bool = False) -> dict:
    """Current burden metrics, level, and contributing factors."""
    metrics = await burden.current_metrics(force_refresh=force_refresh)
    return {"burden": metrics.to_dict()}


@router.get("/api/persona")
async def get_persona(force_refresh: bool = False) -> dict:
    detected = await persona.detect(force_refresh=force_refresh)
    return {"persona": detected.to_dict()}


@router.get("/api/bandit")
async def get_bandit() -> dict:
    """Per-arm posterior statistics and the rollout state."""
    return {"bandit": sampler.stats(), "rollout": rollout.metrics()}


@router.get("/api/outcomes/stats")
async def outcome_stats(days: int = Query(default=7, ge=1, le=365)) -> dict:
    return await outcomes.statistics(days)

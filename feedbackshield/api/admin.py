"""
Admin API endpoints for FeedbackShield review tooling.

Includes:
- Behavioral pattern triage and resolution
- Red flag lexicon curation
- Score corrections
- Retention cleanup
- Metrics
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from feedbackshield.api.dependencies import get_engine
from feedbackshield.api.security import verify_api_token
from feedbackshield.pipelines.fraud_pipeline import FraudEngine
from feedbackshield.schemas.fraud_schemas import (
    BehavioralPatternOut,
    BulkKeywordRequest,
    BulkKeywordResponse,
    CleanupResponse,
    FraudScoreOut,
    KeywordCreate,
    KeywordOut,
    ResolvePatternRequest,
)
from feedbackshield.utils.logging_config import metrics

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_api_token)],
)


class ScoreCorrection(BaseModel):
    context_score: Optional[float] = Field(None, ge=0)
    keyword_score: Optional[float] = Field(None, ge=0)
    behavioral_score: Optional[float] = Field(None, ge=0)
    transaction_score: Optional[float] = Field(None, ge=0)


# ============== PATTERN ENDPOINTS ==============


@router.get("/patterns/critical", response_model=List[BehavioralPatternOut])
def critical_patterns(
    risk_threshold: Optional[float] = Query(None, ge=0, le=30),
    limit: int = Query(50, ge=1, le=500),
    engine: FraudEngine = Depends(get_engine),
):
    """Unresolved patterns at or above the threshold, riskiest first."""
    return engine.get_critical_patterns(risk_threshold, limit)


@router.get("/patterns/{identity_hash}", response_model=List[BehavioralPatternOut])
def identity_patterns(identity_hash: str, include_resolved: bool = False, engine: FraudEngine = Depends(get_engine)):
    return engine.get_patterns(identity_hash, include_resolved=include_resolved)


@router.post("/patterns/{pattern_id}/resolve", response_model=BehavioralPatternOut)
def resolve_pattern(pattern_id: int, request: ResolvePatternRequest, engine: FraudEngine = Depends(get_engine)):
    """Resolve a pattern; the note is mandatory and the row is kept."""
    return engine.resolve_pattern(pattern_id, request.notes)


# ============== KEYWORD ENDPOINTS ==============


@router.get("/keywords", response_model=List[KeywordOut])
def list_keywords(
    language: Optional[str] = None,
    category: Optional[str] = None,
    engine: FraudEngine = Depends(get_engine),
):
    return engine.list_keywords(language, category)


@router.post("/keywords", response_model=KeywordOut, status_code=201)
def create_keyword(request: KeywordCreate, created_by: Optional[str] = None, engine: FraudEngine = Depends(get_engine)):
    return engine.create_keyword(created_by=created_by, **request.model_dump())


@router.post("/keywords/bulk", response_model=BulkKeywordResponse)
def bulk_create_keywords(request: BulkKeywordRequest, engine: FraudEngine = Depends(get_engine)):
    created, errors = engine.bulk_create_keywords(
        [k.model_dump() for k in request.keywords],
        created_by=request.created_by,
    )
    return BulkKeywordResponse(created=created, errors=errors)


@router.delete("/keywords/{keyword_id}", response_model=KeywordOut)
def deactivate_keyword(keyword_id: int, engine: FraudEngine = Depends(get_engine)):
    """Deactivate (never hard-delete) a lexicon entry."""
    return engine.deactivate_keyword(keyword_id)


# ============== SCORE CORRECTIONS ==============


@router.patch("/scores/{score_id}", response_model=FraudScoreOut)
def correct_score(score_id: int, request: ScoreCorrection, engine: FraudEngine = Depends(get_engine)):
    changes = request.model_dump(exclude_none=True)
    return engine.update_score(score_id, **changes)


# ============== MAINTENANCE ==============


@router.post("/cleanup", response_model=CleanupResponse)
def run_cleanup(engine: FraudEngine = Depends(get_engine)):
    return engine.run_cleanup()


@router.get("/metrics")
def get_metrics():
    """Get current application metrics."""
    return metrics.get_stats()


@router.post("/metrics/reset")
def reset_metrics():
    """Reset all metrics (use with caution)."""
    metrics.reset()
    return {"message": "Metrics reset"}

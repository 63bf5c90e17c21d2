from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============== REQUESTS ==============


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class CallEvent(BaseModel):
    """One previous (or the current) call from the identity."""
    timestamp: datetime
    location: Optional[GeoPoint] = None
    feedback_text: Optional[str] = None
    call_id: Optional[str] = None


class ClaimedTransaction(BaseModel):
    amount: float = Field(..., ge=0)
    timestamp: datetime
    currency: str = "SEK"


class FraudScoreRequest(BaseModel):
    """Input for one scoring run."""
    identity_hash: str
    feedback_text: str = Field(..., min_length=1)
    business_context: Dict[str, Any] = Field(default_factory=dict)
    claimed_transaction: Optional[ClaimedTransaction] = None
    call_history: List[CallEvent] = Field(default_factory=list)
    current_call: Optional[CallEvent] = None  # defaults to "now", no location
    language: Optional[str] = None


class BulkScoresRequest(BaseModel):
    identity_hashes: List[str] = Field(..., min_length=1, max_length=1000)


class ResolvePatternRequest(BaseModel):
    notes: str = Field(..., min_length=1)


class KeywordCreate(BaseModel):
    keyword: str = Field(..., min_length=1, max_length=100)
    category: str
    severity_level: int = Field(..., ge=1, le=10)
    language_code: str = "sv"
    detection_pattern: Optional[str] = None


class KeywordUpdate(BaseModel):
    category: Optional[str] = None
    severity_level: Optional[int] = Field(None, ge=1, le=10)
    detection_pattern: Optional[str] = None
    is_active: Optional[bool] = None


class BulkKeywordRequest(BaseModel):
    keywords: List[KeywordCreate] = Field(..., min_length=1)
    created_by: Optional[str] = None


# ============== RESPONSES ==============


class FraudScoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    identity_hash: str
    context_score: float
    keyword_score: float
    behavioral_score: float
    transaction_score: float
    composite_score: float
    risk_level: str
    fraud_probability: float
    confidence_level: int
    analysis_version: str
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ContributingFactorOut(BaseModel):
    component: str
    score: float
    max_score: float
    weight_percent: float
    confidence: float
    indicators: List[str]


class FraudScoreResponse(BaseModel):
    """Complete answer for one scoring run."""
    fraud_score: FraudScoreOut
    is_fraudulent: bool
    contributing_factors: List[ContributingFactorOut]
    recommendations: List[str]
    recommended_action: str  # block / review / monitor / allow
    explanation: str
    degraded_components: List[str] = Field(default_factory=list)


class BehavioralPatternOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    identity_hash: str
    pattern_type: str
    risk_score: float
    violation_count: int
    pattern_data: Optional[Dict[str, Any]] = None
    detection_rules: Optional[List[str]] = None
    is_resolved: bool
    resolution_notes: Optional[str] = None
    first_detected: datetime
    last_updated: datetime


class KeywordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    keyword: str
    category: str
    severity_level: int
    language_code: str
    detection_pattern: Optional[str] = None
    is_active: bool


class BulkKeywordResponse(BaseModel):
    created: List[KeywordOut]
    errors: List[str]


class BulkScoresResponse(BaseModel):
    scores: Dict[str, FraudScoreOut]
    missing: List[str]


class CleanupResponse(BaseModel):
    expired_scores_deleted: int
    resolved_patterns_deleted: int
    context_analyses_deleted: int

"""
Score aggregation and FraudScore persistence.

Every write derives composite score, risk level, probability and
confidence from the four components in the same commit. Scoring runs are
append-only; `update_fraud_score` is the only in-place correction path.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.database import utcnow
from feedbackshield.errors import PersistenceError, RecordNotFound, ValidationError
from feedbackshield.models.fraud_score import COMPONENT_BOUNDS, FraudScore, RiskLevel
from feedbackshield.schemas.fraud_schemas import (
    ContributingFactorOut,
    FraudScoreOut,
    FraudScoreResponse,
)
from feedbackshield.utils.explainability import (
    contributing_factors,
    recommendations,
    recommended_action,
    summarize,
)
from feedbackshield.utils.logging_config import StructuredLogger
from feedbackshield.utils.preprocessing import validate_identity_hash
from feedbackshield.utils.risk_levels import derive_score_fields, is_fraudulent

logger = StructuredLogger(__name__)


def _active_filter(now: datetime):
    return or_(FraudScore.expires_at.is_(None), FraudScore.expires_at > now)


def _components(score: FraudScore) -> Dict[str, float]:
    return {name: getattr(score, name) for name in COMPONENT_BOUNDS}


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to {action}: {e}") from e


# ============== WRITES ==============


def create_fraud_score(
    db: Session,
    identity_hash: str,
    context_score: float,
    keyword_score: float,
    behavioral_score: float,
    transaction_score: float,
    analysis_version: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    analysis_metadata: Optional[Dict[str, Any]] = None,
) -> FraudScore:
    """
    Append a new FraudScore row.

    Components outside their bounds raise ValidationError; nothing is
    clamped. Expiry defaults to now + score_ttl_hours (0 disables it).
    """
    validate_identity_hash(identity_hash)
    fields = derive_score_fields({
        "context_score": context_score,
        "keyword_score": keyword_score,
        "behavioral_score": behavioral_score,
        "transaction_score": transaction_score,
    })

    now = utcnow()
    if expires_at is None and settings.score_ttl_hours > 0:
        expires_at = now + timedelta(hours=settings.score_ttl_hours)

    score = FraudScore(
        identity_hash=identity_hash,
        analysis_version=analysis_version or settings.analysis_version,
        analysis_metadata=analysis_metadata,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(score)
    _commit(db, "persist fraud score")
    db.refresh(score)

    logger.info(
        "Fraud score created",
        score_id=score.id,
        composite=score.composite_score,
        risk_level=score.risk_level,
        confidence=score.confidence_level,
        analysis_version=score.analysis_version,
    )
    return score


def update_fraud_score(db: Session, score_id: int, **changes) -> FraudScore:
    """
    Correct components of an existing row in place.

    Only component fields (and expires_at) may change; derived fields are
    recomputed atomically with them.
    """
    allowed = set(COMPONENT_BOUNDS) | {"expires_at"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")

    score = db.get(FraudScore, score_id)
    if score is None:
        raise RecordNotFound("fraud score", score_id)

    components = _components(score)
    components.update({k: v for k, v in changes.items() if k in COMPONENT_BOUNDS})
    fields = derive_score_fields(components)

    for name, value in fields.items():
        setattr(score, name, value)
    if "expires_at" in changes:
        score.expires_at = changes["expires_at"]
    score.updated_at = utcnow()
    _commit(db, f"update fraud score {score_id}")
    db.refresh(score)

    logger.info("Fraud score corrected", score_id=score_id, fields=sorted(changes), composite=score.composite_score)
    return score


def delete_expired_scores(db: Session, retention_days: Optional[int] = None) -> int:
    """Delete rows that expired more than `retention_days` ago."""
    days = retention_days if retention_days is not None else settings.score_retention_days
    cutoff = utcnow() - timedelta(days=days)
    try:
        deleted = (
            db.query(FraudScore)
            .filter(FraudScore.expires_at.isnot(None), FraudScore.expires_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to delete expired scores: {e}") from e
    return deleted


# ============== READS ==============


def get_active_score(db: Session, identity_hash: str, now: Optional[datetime] = None) -> Optional[FraudScore]:
    """Most recently created, non-expired row for the identity."""
    validate_identity_hash(identity_hash)
    now = now or utcnow()
    return (
        db.query(FraudScore)
        .filter(FraudScore.identity_hash == identity_hash, _active_filter(now))
        .order_by(FraudScore.created_at.desc(), FraudScore.id.desc())
        .first()
    )


def get_score_history(db: Session, identity_hash: str, limit: int = 50) -> List[FraudScore]:
    validate_identity_hash(identity_hash)
    return (
        db.query(FraudScore)
        .filter(FraudScore.identity_hash == identity_hash)
        .order_by(FraudScore.created_at.desc(), FraudScore.id.desc())
        .limit(limit)
        .all()
    )


def get_bulk_scores(
    db: Session,
    identity_hashes: List[str],
    include_expired: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, FraudScore]:
    """Latest row per identity; identities without one are absent."""
    for identity_hash in identity_hashes:
        validate_identity_hash(identity_hash)
    if not identity_hashes:
        return {}
    now = now or utcnow()

    # Same ordering as get_active_score, ranked per identity
    ranked = db.query(
        FraudScore.id.label("id"),
        func.row_number().over(
            partition_by=FraudScore.identity_hash,
            order_by=(FraudScore.created_at.desc(), FraudScore.id.desc()),
        ).label("row_rank"),
    ).filter(FraudScore.identity_hash.in_(identity_hashes))
    if not include_expired:
        ranked = ranked.filter(_active_filter(now))
    ranked = ranked.subquery()

    rows = (
        db.query(FraudScore)
        .join(ranked, FraudScore.id == ranked.c.id)
        .filter(ranked.c.row_rank == 1)
        .all()
    )
    return {row.identity_hash: row for row in rows}


def get_scores_by_date_range(
    db: Session,
    start: datetime,
    end: datetime,
    risk_level: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[FraudScore]:
    if start > end:
        raise ValidationError("start must not be after end", field="start")
    query = db.query(FraudScore).filter(FraudScore.created_at >= start, FraudScore.created_at <= end)
    if risk_level:
        if risk_level not in {r.value for r in RiskLevel}:
            raise ValidationError(f"unknown risk level '{risk_level}'", field="risk_level")
        query = query.filter(FraudScore.risk_level == risk_level)
    return query.order_by(FraudScore.created_at.desc(), FraudScore.id.desc()).offset(offset).limit(limit).all()


def get_score_statistics(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    query = db.query(FraudScore)
    if start is not None:
        query = query.filter(FraudScore.created_at >= start)
    if end is not None:
        query = query.filter(FraudScore.created_at <= end)
    scores = query.all()

    risk_distribution = {level.value: 0 for level in RiskLevel}
    total = len(scores)
    if total == 0:
        return {
            "total_scores": 0,
            "fraudulent_count": 0,
            "fraud_rate": 0.0,
            "risk_distribution": risk_distribution,
            "average_composite_score": 0.0,
            "average_confidence": 0.0,
            "component_averages": {name: 0.0 for name in COMPONENT_BOUNDS},
        }

    for score in scores:
        risk_distribution[score.risk_level] = risk_distribution.get(score.risk_level, 0) + 1
    fraudulent = sum(1 for s in scores if is_fraudulent(s.composite_score))

    return {
        "total_scores": total,
        "fraudulent_count": fraudulent,
        "fraud_rate": round(fraudulent / total, 4),
        "risk_distribution": risk_distribution,
        "average_composite_score": round(sum(s.composite_score for s in scores) / total, 2),
        "average_confidence": round(sum(s.confidence_level for s in scores) / total, 2),
        "component_averages": {
            name: round(sum(getattr(s, name) for s in scores) / total, 2)
            for name in COMPONENT_BOUNDS
        },
    }


# ============== RESPONSE ==============


def generate_response(score: FraudScore, degraded_components: Optional[List[str]] = None) -> FraudScoreResponse:
    """Explanation, contributing factors and recommendations for one row."""
    components = _components(score)
    degraded = list(degraded_components or [])
    factors = contributing_factors(components)

    return FraudScoreResponse(
        fraud_score=FraudScoreOut.model_validate(score),
        is_fraudulent=is_fraudulent(score.composite_score),
        contributing_factors=[ContributingFactorOut(**vars(f)) for f in factors],
        recommendations=recommendations(components, score.composite_score, score.confidence_level),
        recommended_action=recommended_action(score.composite_score, score.confidence_level),
        explanation=summarize(factors, score.composite_score, score.risk_level, score.confidence_level, degraded),
        degraded_components=degraded,
    )

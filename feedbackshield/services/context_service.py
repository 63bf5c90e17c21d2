"""
Context analyzer: consumes an external legitimacy judgement of the feedback
text and maps it to the 0-40 context component.

External calls run on a bounded pool, so at most `max_inflight` judgements
are outstanding at once; time spent queued for a slot counts against the
per-attempt timeout. When retries run out the analyzer returns a degraded
result instead of raising, and the analysis row is persisted either way.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.database import utcnow
from feedbackshield.errors import PersistenceError, UpstreamUnavailable
from feedbackshield.models.context_analysis import ContextAnalysis
from feedbackshield.models.fraud_score import MAX_CONTEXT_SCORE
from feedbackshield.services.llm_client import LegitimacyJudgement, LegitimacyProvider
from feedbackshield.utils.logging_config import StructuredLogger, metrics
from feedbackshield.utils.preprocessing import normalize_text, text_statistics
from feedbackshield.utils.retry import call_with_retry

logger = StructuredLogger(__name__)

# Facet weights, summing to the 40-point maximum
IMPLAUSIBILITY_WEIGHT = 25.0
IMPOSSIBLE_CLAIMS_WEIGHT = 10.0
CULTURAL_MISMATCH_WEIGHT = 3.0
INCOHERENT_SENTIMENT_WEIGHT = 2.0


@dataclass
class ContextResult:
    score: float
    confidence: float
    language: Optional[str]
    degraded: bool
    analysis_id: Optional[int] = None
    facets: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def map_facets_to_score(facets: Dict[str, Any]) -> float:
    """Deterministic 0-40 suspicion score; higher means less legitimate."""
    score = (1.0 - facets.get("plausibility", 0.5)) * IMPLAUSIBILITY_WEIGHT
    if facets.get("impossible_claims"):
        score += IMPOSSIBLE_CLAIMS_WEIGHT
    if facets.get("cultural_mismatch"):
        score += CULTURAL_MISMATCH_WEIGHT
    if not facets.get("sentiment_claim_coherent", True):
        score += INCOHERENT_SENTIMENT_WEIGHT
    return round(min(MAX_CONTEXT_SCORE, max(0.0, score)), 2)


class ContextAnalyzer:
    def __init__(
        self,
        provider: LegitimacyProvider,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        max_inflight: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        degraded_score: Optional[float] = None,
    ):
        self.provider = provider
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.context_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.context_max_retries
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.context_retry_base_delay
        )
        self.degraded_score = degraded_score if degraded_score is not None else settings.context_degraded_score
        self._pool = ThreadPoolExecutor(
            max_workers=max_inflight if max_inflight is not None else settings.context_max_inflight,
            thread_name_prefix="context-judgement",
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _judge_once(self, text: str, business_context: Dict[str, Any]) -> LegitimacyJudgement:
        future = self._pool.submit(self.provider.analyze, text, business_context)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            metrics.increment("context.timeouts")
            raise UpstreamUnavailable(
                f"legitimacy judgement timed out after {self.timeout}s", provider="legitimacy", transient=True
            ) from e

    def analyze(
        self,
        db: Session,
        identity_hash: str,
        text: str,
        business_context: Optional[Dict[str, Any]] = None,
        language_hint: Optional[str] = None,
    ) -> ContextResult:
        text = normalize_text(text)
        business_context = business_context or {}
        attempts = 0

        def attempt() -> LegitimacyJudgement:
            nonlocal attempts
            attempts += 1
            return self._judge_once(text, business_context)

        judgement: Optional[LegitimacyJudgement] = None
        error: Optional[str] = None
        try:
            judgement, _ = call_with_retry(
                attempt,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                max_delay=settings.context_retry_max_delay,
                label="legitimacy judgement",
            )
        except UpstreamUnavailable as e:
            error = str(e)
            metrics.increment("context.degraded")
            logger.warning(
                "Context analysis degraded",
                error=error,
                transient=e.transient,
                attempts=attempts,
            )

        if judgement is not None:
            facets = judgement.facets
            result = ContextResult(
                score=map_facets_to_score(facets),
                confidence=round(facets.get("confidence", 0.0) * 100, 1),
                language=facets.get("language") or language_hint,
                degraded=False,
                facets=facets,
            )
        else:
            result = ContextResult(
                score=self.degraded_score,
                confidence=0.0,
                language=language_hint,
                degraded=True,
                error=error,
            )

        record = ContextAnalysis(
            identity_hash=identity_hash,
            feedback_content=text,
            language_detected=result.language,
            business_context=business_context,
            external_judgement=judgement.raw if judgement else None,
            legitimacy_score=result.score,
            confidence_score=result.confidence,
            analysis_metadata={
                **text_statistics(text),
                "latency_ms": judgement.latency_ms if judgement else None,
                "attempts": attempts,
                "degraded": result.degraded,
                "error": error,
                "impossible_claims": bool(result.facets.get("impossible_claims")),
                "impossible_claim_list": result.facets.get("impossible_claims", []),
                "cultural_mismatch": bool(result.facets.get("cultural_mismatch")),
                "sentiment_claim_coherent": result.facets.get("sentiment_claim_coherent"),
                "plausibility": result.facets.get("plausibility"),
            },
        )
        db.add(record)
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to persist context analysis: {e}") from e
        db.refresh(record)

        result.analysis_id = record.id
        return result


# ============== STATISTICS & RETENTION ==============


def get_context_statistics(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    query = db.query(ContextAnalysis)
    if start is not None:
        query = query.filter(ContextAnalysis.created_at >= start)
    if end is not None:
        query = query.filter(ContextAnalysis.created_at <= end)
    rows: List[ContextAnalysis] = query.all()

    total = len(rows)
    if total == 0:
        return {
            "total_analyses": 0,
            "language_distribution": {},
            "average_legitimacy_score": 0.0,
            "average_confidence": 0.0,
            "impossible_claims_count": 0,
            "degraded_count": 0,
        }

    languages: Dict[str, int] = {}
    for row in rows:
        key = row.language_detected or "unknown"
        languages[key] = languages.get(key, 0) + 1

    meta = [row.analysis_metadata or {} for row in rows]
    return {
        "total_analyses": total,
        "language_distribution": languages,
        "average_legitimacy_score": round(sum(r.legitimacy_score for r in rows) / total, 2),
        "average_confidence": round(sum(r.confidence_score for r in rows) / total, 2),
        "impossible_claims_count": sum(1 for m in meta if m.get("impossible_claims")),
        "degraded_count": sum(1 for m in meta if m.get("degraded")),
    }


def delete_old_analyses(db: Session, days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    try:
        deleted = (
            db.query(ContextAnalysis)
            .filter(ContextAnalysis.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to delete context analyses: {e}") from e
    return deleted

"""
FraudEngine: wires the four analyzers, the pattern store and the score
aggregator together and exposes the caller-facing operations.

All collaborators are passed in; `build_engine()` assembles the production
wiring from settings.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.database import SessionLocal, init_db, to_naive_utc, utcnow
from feedbackshield.errors import RecordNotFound, ValidationError
from feedbackshield.models.context_analysis import ContextAnalysis
from feedbackshield.models.fraud_score import FraudScore
from feedbackshield.models.red_flag_keyword import SUPPORTED_LANGUAGES
from feedbackshield.schemas.fraud_schemas import (
    BehavioralPatternOut,
    CallEvent,
    FraudScoreOut,
    FraudScoreRequest,
    FraudScoreResponse,
    KeywordOut,
)
from feedbackshield.services import keyword_service, scoring_service
from feedbackshield.services.behavioral_service import BehavioralDetector
from feedbackshield.services.context_service import (
    ContextAnalyzer,
    delete_old_analyses,
    get_context_statistics,
)
from feedbackshield.services.keyword_service import KeywordDetector
from feedbackshield.services.llm_client import OpenAILegitimacyProvider
from feedbackshield.services.pattern_store import PatternStore
from feedbackshield.services.transaction_service import TransactionMatchProvider, TransactionVerifier
from feedbackshield.utils.logging_config import StructuredLogger, identity_var, track_scoring
from feedbackshield.utils.preprocessing import validate_identity_hash

logger = StructuredLogger(__name__)


class IdentityLocks:
    """One lock per identity hash, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}  # identity -> [lock, users]

    @contextmanager
    def hold(self, identity_hash: str):
        with self._guard:
            entry = self._locks.setdefault(identity_hash, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[identity_hash]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class FraudEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        context_analyzer: ContextAnalyzer,
        keyword_detector: KeywordDetector,
        behavioral_detector: BehavioralDetector,
        transaction_verifier: TransactionVerifier,
        pattern_store: PatternStore,
        analysis_version: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.context = context_analyzer
        self.keywords = keyword_detector
        self.behavioral = behavioral_detector
        self.transactions = transaction_verifier
        self.patterns = pattern_store
        self.analysis_version = analysis_version or settings.analysis_version
        self.locks = IdentityLocks()

    @contextmanager
    def session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # ============== SCORING ==============

    @track_scoring
    def compute_score(self, request: FraudScoreRequest) -> FraudScoreResponse:
        """
        Run all four analyzers for one identity and persist a new FraudScore.

        Runs for the same identity are serialized; different identities
        proceed in parallel.
        """
        validate_identity_hash(request.identity_hash)
        if request.language and request.language not in SUPPORTED_LANGUAGES:
            raise ValidationError(f"unsupported language '{request.language}'", field="language")

        token = identity_var.set(request.identity_hash)
        try:
            with self.locks.hold(request.identity_hash), self.session() as db:
                score, degraded = self._score_identity(db, request, utcnow())
                return scoring_service.generate_response(score, degraded)
        finally:
            identity_var.reset(token)

    def _call_history(self, request: FraudScoreRequest, now: datetime) -> List[CallEvent]:
        current = request.current_call or CallEvent(timestamp=now)
        if not current.feedback_text:
            current = current.model_copy(update={"feedback_text": request.feedback_text})
        calls = list(request.call_history) + [current]
        return [call.model_copy(update={"timestamp": to_naive_utc(call.timestamp)}) for call in calls]

    def _keyword_language(self, request: FraudScoreRequest, detected: Optional[str]) -> str:
        if request.language:
            return request.language
        if detected in SUPPORTED_LANGUAGES:
            return detected
        return settings.default_language

    def _score_identity(self, db: Session, request: FraudScoreRequest, now: datetime):
        identity = request.identity_hash
        degraded: List[str] = []

        # 1) Context (external judgement; also tells us the language)
        context = self.context.analyze(
            db, identity, request.feedback_text, request.business_context, language_hint=request.language
        )
        if context.degraded:
            degraded.append("context")

        # 2) Keywords
        keywords = self.keywords.detect(db, request.feedback_text, self._keyword_language(request, context.language))

        # 3) Behavior over history plus this call
        behavioral = self.behavioral.analyze(db, identity, self._call_history(request, now), now=now)

        # 4) Transaction
        transaction = self.transactions.verify(identity, request.claimed_transaction)
        if transaction.degraded:
            degraded.append("transaction")

        # 5) Aggregate
        score = scoring_service.create_fraud_score(
            db,
            identity_hash=identity,
            context_score=context.score,
            keyword_score=keywords.score,
            behavioral_score=behavioral.score,
            transaction_score=transaction.score,
            analysis_version=self.analysis_version,
            analysis_metadata={
                "context": {
                    "analysis_id": context.analysis_id,
                    "language": context.language,
                    "confidence": context.confidence,
                    "degraded": context.degraded,
                },
                "keywords": {
                    "language": keywords.language,
                    "matches": [
                        {"keyword": m.keyword, "category": m.category, "severity": m.severity,
                         "occurrences": m.occurrences}
                        for m in keywords.matches
                    ],
                },
                "behavioral": {
                    "pattern_ids": behavioral.pattern_ids,
                    "detected": [d.pattern_type for d in behavioral.detections],
                },
                "transaction": {
                    "outcome": transaction.outcome.value,
                    "degraded": transaction.degraded,
                    "error": transaction.error,
                },
                "degraded_components": degraded,
            },
        )
        return score, degraded

    # ============== LOOKUPS ==============

    def get_active_score(self, identity_hash: str) -> Optional[FraudScoreOut]:
        with self.session() as db:
            score = scoring_service.get_active_score(db, identity_hash)
            return FraudScoreOut.model_validate(score) if score else None

    def get_bulk_scores(self, identity_hashes: List[str]) -> Dict[str, FraudScoreOut]:
        with self.session() as db:
            rows = scoring_service.get_bulk_scores(db, identity_hashes)
            return {identity: FraudScoreOut.model_validate(row) for identity, row in rows.items()}

    def update_score(self, score_id: int, **changes) -> FraudScoreOut:
        with self.session() as db:
            row = db.get(FraudScore, score_id)
            if row is None:
                raise RecordNotFound("fraud score", score_id)
            with self.locks.hold(row.identity_hash):
                return FraudScoreOut.model_validate(scoring_service.update_fraud_score(db, score_id, **changes))

    def get_statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        with self.session() as db:
            return {
                "period": {
                    "start": start.isoformat() if start else None,
                    "end": end.isoformat() if end else None,
                },
                "scores": scoring_service.get_score_statistics(db, start, end),
                "patterns": self.patterns.get_statistics(db, start, end),
                "context": get_context_statistics(db, start, end),
            }

    # ============== PATTERN REVIEW ==============

    def resolve_pattern(self, pattern_id: int, notes: str) -> BehavioralPatternOut:
        with self.session() as db:
            return BehavioralPatternOut.model_validate(self.patterns.resolve_pattern(db, pattern_id, notes))

    def get_critical_patterns(self, risk_threshold: Optional[float] = None, limit: int = 50) -> List[BehavioralPatternOut]:
        with self.session() as db:
            return [
                BehavioralPatternOut.model_validate(p)
                for p in self.patterns.get_critical_patterns(db, risk_threshold, limit)
            ]

    def get_patterns(self, identity_hash: str, include_resolved: bool = False) -> List[BehavioralPatternOut]:
        validate_identity_hash(identity_hash)
        with self.session() as db:
            return [
                BehavioralPatternOut.model_validate(p)
                for p in self.patterns.get_patterns(db, identity_hash, include_resolved=include_resolved)
            ]

    # ============== LEXICON CURATION ==============

    def list_keywords(self, language: Optional[str] = None, category: Optional[str] = None) -> List[KeywordOut]:
        with self.session() as db:
            return [KeywordOut.model_validate(k) for k in keyword_service.get_active_keywords(db, language, category)]

    def create_keyword(self, created_by: Optional[str] = None, **fields) -> KeywordOut:
        with self.session() as db:
            return KeywordOut.model_validate(keyword_service.create_keyword(db, created_by=created_by, **fields))

    def bulk_create_keywords(self, keywords: List[Dict[str, Any]], created_by: Optional[str] = None):
        with self.session() as db:
            created, errors = keyword_service.bulk_create_keywords(db, keywords, created_by=created_by)
            return [KeywordOut.model_validate(k) for k in created], errors

    def deactivate_keyword(self, keyword_id: int) -> KeywordOut:
        with self.session() as db:
            return KeywordOut.model_validate(keyword_service.deactivate_keyword(db, keyword_id))

    # ============== RESCORING INPUT & RETENTION ==============

    def rescore_request(self, identity_hash: str) -> Optional[FraudScoreRequest]:
        """
        Rebuild a scoring request from the identity's latest stored feedback.

        The call keeps its original timestamp, so re-scoring adds no new call.
        """
        validate_identity_hash(identity_hash)
        with self.session() as db:
            latest = (
                db.query(ContextAnalysis)
                .filter(ContextAnalysis.identity_hash == identity_hash)
                .order_by(ContextAnalysis.created_at.desc(), ContextAnalysis.id.desc())
                .first()
            )
            if latest is None:
                return None
            return FraudScoreRequest(
                identity_hash=identity_hash,
                feedback_text=latest.feedback_content,
                business_context=latest.business_context or {},
                current_call=CallEvent(timestamp=latest.created_at, feedback_text=latest.feedback_content),
                language=latest.language_detected if latest.language_detected in SUPPORTED_LANGUAGES else None,
            )

    def run_cleanup(self) -> Dict[str, int]:
        """Retention sweep, safe to call from any external scheduler."""
        with self.session() as db:
            result = {
                "expired_scores_deleted": scoring_service.delete_expired_scores(db, settings.score_retention_days),
                "resolved_patterns_deleted": self.patterns.delete_old_resolved(db, settings.pattern_retention_days),
                "context_analyses_deleted": delete_old_analyses(db, settings.context_retention_days),
            }
        logger.info("Retention cleanup finished", **result)
        return result

    def close(self) -> None:
        self.context.shutdown()


def build_engine(
    session_factory: Callable[[], Session] = SessionLocal,
    transaction_provider: Optional[TransactionMatchProvider] = None,
    seed_keywords: bool = True,
) -> FraudEngine:
    """Production wiring from settings."""
    if session_factory is SessionLocal:
        init_db()
    if seed_keywords:
        with session_factory() as db:
            inserted = keyword_service.seed_default_keywords(db)
            if inserted:
                logger.info("Default keyword lexicon seeded", count=inserted)

    store = PatternStore()
    return FraudEngine(
        session_factory=session_factory,
        context_analyzer=ContextAnalyzer(OpenAILegitimacyProvider()),
        keyword_detector=KeywordDetector(),
        behavioral_detector=BehavioralDetector(store),
        transaction_verifier=TransactionVerifier(transaction_provider),
        pattern_store=store,
    )

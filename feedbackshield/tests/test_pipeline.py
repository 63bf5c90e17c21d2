"""End-to-end tests for FraudEngine."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeLegitimacyProvider, FakeTransactionProvider

from feedbackshield.database import utcnow
from feedbackshield.errors import RecordNotFound, ValidationError
from feedbackshield.models.behavioral_pattern import BehavioralPattern
from feedbackshield.models.context_analysis import ContextAnalysis
from feedbackshield.models.fraud_score import FraudScore
from feedbackshield.pipelines.fraud_pipeline import IdentityLocks
from feedbackshield.schemas.fraud_schemas import CallEvent, ClaimedTransaction, FraudScoreRequest
from feedbackshield.services.transaction_service import MatchOutcome
from feedbackshield.utils.logging_config import metrics

IDENTITY = "a1b2c3d4e5f6a7b8"
OTHER_IDENTITY = "ffee0011ddcc2233"


def request(identity=IDENTITY, text="Trevlig personal och bra kaffe.", **fields):
    return FraudScoreRequest(identity_hash=identity, feedback_text=text, **fields)


class TestComputeScore:
    def test_clean_feedback(self, fraud_engine, db):
        response = fraud_engine.compute_score(request())

        score = response.fraud_score
        assert score.context_score == 0.0
        assert score.keyword_score == 0.0
        assert score.behavioral_score == 0.0
        # No transaction provider configured
        assert score.transaction_score == 5.0
        assert score.composite_score == 5.0
        assert score.risk_level == "low"
        assert response.is_fraudulent is False
        assert response.recommended_action == "allow"
        assert response.degraded_components == ["transaction"]

        row = db.get(FraudScore, score.id)
        assert row.analysis_metadata["context"]["language"] == "sv"
        assert row.analysis_metadata["transaction"]["outcome"] == "unavailable"

    def test_composite_is_sum_of_components(self, make_engine, session_factory):
        provider = FakeLegitimacyProvider({
            "language": "sv",
            "plausibility": 0.2,
            "impossible_claims": ["Gratis allt för alla"],
            "cultural_mismatch": False,
            "sentiment_claim_coherent": True,
            "confidence": 0.7,
        })
        engine = make_engine(
            session_factory,
            provider=provider,
            transaction_provider=FakeTransactionProvider(MatchOutcome.NO_MATCH),
        )
        response = engine.compute_score(request(
            text="Personalen hotade mig, fan vad dåligt.",
            claimed_transaction=ClaimedTransaction(amount=99.0, timestamp=utcnow()),
        ))

        score = response.fraud_score
        assert score.context_score == 30.0
        assert score.keyword_score == 10.0
        assert score.transaction_score == 10.0
        assert score.composite_score == (
            score.context_score + score.keyword_score + score.behavioral_score + score.transaction_score
        )
        assert score.risk_level == "medium"
        assert response.degraded_components == []

    def test_frequency_abuse_detected_from_history(self, fraud_engine, db):
        now = utcnow()
        history = [CallEvent(timestamp=now - timedelta(minutes=2 * i)) for i in range(1, 6)]
        response = fraud_engine.compute_score(request(call_history=history))

        assert response.fraud_score.behavioral_score > 0
        # Time-of-day rules may also fire depending on when the test runs
        pattern = (
            db.query(BehavioralPattern)
            .filter_by(identity_hash=IDENTITY, pattern_type="frequency_abuse")
            .one()
        )
        assert pattern.violation_count >= 1
        assert pattern.risk_score > 0

    def test_rescoring_same_history_is_stable(self, fraud_engine, db):
        now = utcnow()
        history = [CallEvent(timestamp=now - timedelta(minutes=2 * i)) for i in range(1, 6)]
        current = CallEvent(timestamp=now)

        scores = [
            fraud_engine.compute_score(request(call_history=history, current_call=current)).fraud_score
            for _ in range(3)
        ]

        assert scores[0].behavioral_score > 0
        assert {s.behavioral_score for s in scores} == {scores[0].behavioral_score}
        assert {s.composite_score for s in scores} == {scores[0].composite_score}
        pattern = (
            db.query(BehavioralPattern)
            .filter_by(identity_hash=IDENTITY, pattern_type="frequency_abuse")
            .one()
        )
        assert pattern.violation_count == 1

    def test_aware_history_timestamps_accepted(self, fraud_engine):
        now = datetime.now(timezone.utc)
        history = [CallEvent(timestamp=now - timedelta(minutes=i)) for i in range(1, 3)]
        response = fraud_engine.compute_score(request(call_history=history))
        assert response.fraud_score.identity_hash == IDENTITY

    def test_context_failure_degrades_but_scores(self, make_engine, session_factory, db):
        provider = FakeLegitimacyProvider(delay=0.3)
        engine = make_engine(session_factory, provider=provider, timeout_seconds=0.05)
        response = engine.compute_score(request())

        assert "context" in response.degraded_components
        assert response.fraud_score.context_score == 0.0
        assert db.query(ContextAnalysis).count() == 1
        assert db.query(FraudScore).count() == 1

    def test_keyword_language_follows_detected_language(self, make_engine, session_factory):
        provider = FakeLegitimacyProvider({"language": "en", "plausibility": 1.0, "confidence": 0.9})
        engine = make_engine(session_factory, provider=provider)
        response = engine.compute_score(request(text="The cashier was levitating"))
        assert response.fraud_score.keyword_score == 7.0

    def test_explicit_language_wins(self, fraud_engine):
        response = fraud_engine.compute_score(request(text="The cashier was levitating", language="sv"))
        assert response.fraud_score.keyword_score == 0.0

    def test_invalid_identity_rejected(self, fraud_engine, db):
        with pytest.raises(ValidationError):
            fraud_engine.compute_score(request(identity="bad"))
        assert db.query(ContextAnalysis).count() == 0

    def test_unsupported_language_rejected(self, fraud_engine):
        with pytest.raises(ValidationError):
            fraud_engine.compute_score(request(language="fi"))

    def test_metrics_tracked(self, fraud_engine):
        metrics.reset()
        fraud_engine.compute_score(request())
        counters = metrics.get_stats()["counters"]
        assert counters["scoring.total"] == 1
        assert counters["scoring.risk.low"] == 1


class TestLookups:
    def test_active_score_is_latest(self, fraud_engine):
        fraud_engine.compute_score(request())
        latest = fraud_engine.compute_score(request(text="Personalen hotade mig"))
        assert fraud_engine.get_active_score(IDENTITY).id == latest.fraud_score.id

    def test_active_score_missing(self, fraud_engine):
        assert fraud_engine.get_active_score(OTHER_IDENTITY) is None

    def test_bulk_scores(self, fraud_engine):
        fraud_engine.compute_score(request())
        other = fraud_engine.compute_score(request(identity=OTHER_IDENTITY))
        scores = fraud_engine.get_bulk_scores([IDENTITY, OTHER_IDENTITY, "0011223344556677"])
        assert set(scores) == {IDENTITY, OTHER_IDENTITY}
        assert scores[OTHER_IDENTITY].id == other.fraud_score.id

    def test_update_score(self, fraud_engine):
        response = fraud_engine.compute_score(request())
        corrected = fraud_engine.update_score(response.fraud_score.id, behavioral_score=30.0)
        assert corrected.composite_score == 35.0
        assert corrected.risk_level == "low"

    def test_update_missing_score(self, fraud_engine):
        with pytest.raises(RecordNotFound):
            fraud_engine.update_score(999, context_score=1.0)

    def test_statistics(self, fraud_engine):
        fraud_engine.compute_score(request())
        stats = fraud_engine.get_statistics()
        assert stats["scores"]["total_scores"] == 1
        assert stats["context"]["total_analyses"] == 1
        assert stats["patterns"]["total_patterns"] == 0
        assert stats["period"] == {"start": None, "end": None}


class TestPatternReview:
    def test_resolve_flow(self, fraud_engine):
        now = utcnow()
        history = [CallEvent(timestamp=now - timedelta(minutes=i)) for i in range(1, 11)]
        fraud_engine.compute_score(request(call_history=history))

        patterns = fraud_engine.get_patterns(IDENTITY)
        assert patterns
        critical_before = fraud_engine.get_critical_patterns(risk_threshold=0)
        pattern_id = patterns[0].id
        assert pattern_id in [p.id for p in critical_before]

        resolved = fraud_engine.resolve_pattern(pattern_id, "Known event night")
        assert resolved.is_resolved is True
        assert pattern_id not in [p.id for p in fraud_engine.get_critical_patterns(risk_threshold=0)]
        assert fraud_engine.get_statistics()["patterns"]["total_patterns"] == len(patterns)
        assert len(fraud_engine.get_patterns(IDENTITY, include_resolved=True)) == len(patterns)


class TestLexiconAndMaintenance:
    def test_keyword_curation_through_engine(self, fraud_engine):
        created = fraud_engine.create_keyword(
            keyword="lurad", category="impossible", severity_level=6, language_code="sv", created_by="ops",
        )
        assert created.keyword == "lurad"
        assert any(k.id == created.id for k in fraud_engine.list_keywords("sv", "impossible"))

        response = fraud_engine.compute_score(request(text="Jag blev lurad"))
        assert response.fraud_score.keyword_score == 6.0

        fraud_engine.deactivate_keyword(created.id)
        assert fraud_engine.compute_score(request(text="Jag blev lurad")).fraud_score.keyword_score == 0.0

    def test_rescore_request_from_latest_feedback(self, fraud_engine):
        assert fraud_engine.rescore_request(IDENTITY) is None
        fraud_engine.compute_score(request(text="Första"))
        fraud_engine.compute_score(request(text="Andra", business_context={"store": "Lund"}))

        rebuilt = fraud_engine.rescore_request(IDENTITY)
        assert rebuilt.feedback_text == "Andra"
        assert rebuilt.business_context == {"store": "Lund"}
        assert rebuilt.language == "sv"
        assert rebuilt.current_call.feedback_text == "Andra"
        assert rebuilt.current_call.timestamp is not None

    def test_cleanup(self, fraud_engine, db):
        response = fraud_engine.compute_score(request())
        row = db.get(FraudScore, response.fraud_score.id)
        row.expires_at = utcnow() - timedelta(days=60)
        db.commit()

        result = fraud_engine.run_cleanup()
        assert result["expired_scores_deleted"] == 1
        assert result["resolved_patterns_deleted"] == 0
        assert result["context_analyses_deleted"] == 0


class TestIdentityLocks:
    def test_same_identity_serialized(self):
        locks = IdentityLocks()
        inside = []
        overlap = []
        guard = threading.Lock()

        def work():
            with locks.hold(IDENTITY):
                with guard:
                    inside.append(1)
                    if len(inside) > 1:
                        overlap.append(1)
                time.sleep(0.01)
                with guard:
                    inside.pop()

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []
        assert len(locks) == 0

    def test_different_identities_independent(self):
        locks = IdentityLocks()
        with locks.hold(IDENTITY):
            acquired = threading.Event()

            def other():
                with locks.hold(OTHER_IDENTITY):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(1.0)
            t.join()

"""Tests for the context analyzer and legitimacy facet mapping."""

from datetime import timedelta

import pytest
from conftest import FakeLegitimacyProvider, transient_error

from feedbackshield.database import utcnow
from feedbackshield.errors import UpstreamUnavailable
from feedbackshield.models.context_analysis import ContextAnalysis
from feedbackshield.services.context_service import (
    ContextAnalyzer,
    delete_old_analyses,
    get_context_statistics,
    map_facets_to_score,
)
from feedbackshield.services.llm_client import normalize_facets
from feedbackshield.utils.logging_config import metrics

IDENTITY = "a1b2c3d4e5f6a7b8"

SUSPICIOUS_FACETS = {
    "language": "en",
    "plausibility": 0.2,
    "impossible_claims": ["The bakery sold me a car"],
    "cultural_mismatch": True,
    "sentiment_claim_coherent": False,
    "confidence": 0.8,
}


@pytest.fixture
def make_analyzer():
    analyzers = []

    def _make(provider, **options):
        settings = {"timeout_seconds": 1.0, "max_retries": 0, "retry_base_delay": 0.0, "max_inflight": 2}
        settings.update(options)
        analyzer = ContextAnalyzer(provider, **settings)
        analyzers.append(analyzer)
        return analyzer

    yield _make
    for analyzer in analyzers:
        analyzer.shutdown()


class TestFacetMapping:
    def test_fully_plausible_is_zero(self):
        assert map_facets_to_score(normalize_facets({"plausibility": 1.0})) == 0.0

    def test_every_red_flag_adds_up(self):
        assert map_facets_to_score(normalize_facets(SUSPICIOUS_FACETS)) == 35.0

    def test_bounded_at_forty(self):
        facets = normalize_facets({**SUSPICIOUS_FACETS, "plausibility": 0.0})
        assert map_facets_to_score(facets) == 40.0

    def test_normalize_defaults(self):
        facets = normalize_facets({"plausibility": "not a number", "impossible_claims": "one claim"})
        assert facets["plausibility"] == 0.5
        assert facets["impossible_claims"] == ["one claim"]
        assert facets["confidence"] == 0.0
        assert facets["language"] is None

    def test_normalize_clamps_unit_values(self):
        facets = normalize_facets({"plausibility": 3, "confidence": -1, "language": "SV"})
        assert facets["plausibility"] == 1.0
        assert facets["confidence"] == 0.0
        assert facets["language"] == "sv"


class TestContextAnalyzer:
    def test_plausible_feedback(self, db, make_analyzer):
        analyzer = make_analyzer(FakeLegitimacyProvider())
        result = analyzer.analyze(db, IDENTITY, "Trevlig personal  och   bra kaffe.", {"type": "café"})

        assert result.score == 0.0
        assert result.confidence == 90.0
        assert result.language == "sv"
        assert result.degraded is False

        row = db.get(ContextAnalysis, result.analysis_id)
        assert row.feedback_content == "Trevlig personal och bra kaffe."
        assert row.business_context == {"type": "café"}
        assert row.external_judgement["plausibility"] == 1.0
        assert row.analysis_metadata["impossible_claims"] is False
        assert row.analysis_metadata["word_count"] == 5

    def test_suspicious_feedback_facets_recorded(self, db, make_analyzer):
        analyzer = make_analyzer(FakeLegitimacyProvider(SUSPICIOUS_FACETS))
        result = analyzer.analyze(db, IDENTITY, "I bought a car at the bakery", {"type": "bakery"})

        assert result.score == 35.0
        row = db.get(ContextAnalysis, result.analysis_id)
        assert row.language_detected == "en"
        assert row.analysis_metadata["impossible_claims"] is True
        assert row.analysis_metadata["cultural_mismatch"] is True
        assert row.analysis_metadata["impossible_claim_list"] == ["The bakery sold me a car"]

    def test_permanent_failure_degrades(self, db, make_analyzer):
        provider = FakeLegitimacyProvider(errors=[UpstreamUnavailable("bad request", provider="fake", transient=False)])
        analyzer = make_analyzer(provider, max_retries=3)
        result = analyzer.analyze(db, IDENTITY, "Bra service", language_hint="sv")

        assert provider.calls == 1
        assert result.degraded is True
        assert result.score == 0.0
        assert result.confidence == 0.0
        assert result.language == "sv"
        # The analysis is still persisted for audit
        row = db.get(ContextAnalysis, result.analysis_id)
        assert row.external_judgement is None
        assert row.analysis_metadata["degraded"] is True
        assert "bad request" in row.analysis_metadata["error"]

    def test_transient_failure_retried(self, db, make_analyzer):
        provider = FakeLegitimacyProvider(errors=[transient_error()])
        analyzer = make_analyzer(provider, max_retries=2)
        result = analyzer.analyze(db, IDENTITY, "Bra service")

        assert provider.calls == 2
        assert result.degraded is False
        row = db.get(ContextAnalysis, result.analysis_id)
        assert row.analysis_metadata["attempts"] == 2

    def test_retries_exhausted(self, db, make_analyzer):
        provider = FakeLegitimacyProvider(errors=[transient_error() for _ in range(5)])
        analyzer = make_analyzer(provider, max_retries=2)
        result = analyzer.analyze(db, IDENTITY, "Bra service")

        assert provider.calls == 3
        assert result.degraded is True

    def test_timeout_degrades(self, db, make_analyzer):
        metrics.reset()
        analyzer = make_analyzer(FakeLegitimacyProvider(delay=0.5), timeout_seconds=0.05)
        result = analyzer.analyze(db, IDENTITY, "Bra service")

        assert result.degraded is True
        assert "timed out" in result.error
        assert metrics.get_stats()["counters"]["context.timeouts"] == 1
        assert db.query(ContextAnalysis).count() == 1

    def test_configured_degraded_score(self, db, make_analyzer):
        provider = FakeLegitimacyProvider(errors=[UpstreamUnavailable("down", transient=False)])
        analyzer = make_analyzer(provider, degraded_score=10.0)
        assert analyzer.analyze(db, IDENTITY, "Bra service").score == 10.0


class TestContextStatistics:
    def test_statistics(self, db, make_analyzer):
        make_analyzer(FakeLegitimacyProvider()).analyze(db, IDENTITY, "Bra service")
        make_analyzer(FakeLegitimacyProvider(SUSPICIOUS_FACETS)).analyze(db, IDENTITY, "Weird story")

        stats = get_context_statistics(db)
        assert stats["total_analyses"] == 2
        assert stats["language_distribution"] == {"sv": 1, "en": 1}
        assert stats["impossible_claims_count"] == 1
        assert stats["average_legitimacy_score"] == 17.5
        assert stats["degraded_count"] == 0

    def test_empty_statistics(self, db):
        assert get_context_statistics(db)["total_analyses"] == 0

    def test_delete_old_analyses(self, db, make_analyzer):
        analyzer = make_analyzer(FakeLegitimacyProvider())
        old = analyzer.analyze(db, IDENTITY, "Gammal feedback")
        analyzer.analyze(db, IDENTITY, "Ny feedback")
        row = db.get(ContextAnalysis, old.analysis_id)
        row.created_at = utcnow() - timedelta(days=120)
        db.commit()

        assert delete_old_analyses(db, days=90) == 1
        assert db.query(ContextAnalysis).count() == 1

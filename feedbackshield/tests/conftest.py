import threading
import time
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from feedbackshield.api.dependencies import get_engine
from feedbackshield.database import init_db
from feedbackshield.errors import UpstreamUnavailable
from feedbackshield.pipelines.fraud_pipeline import FraudEngine
from feedbackshield.services import keyword_service
from feedbackshield.services.behavioral_service import BehavioralDetector
from feedbackshield.services.context_service import ContextAnalyzer
from feedbackshield.services.keyword_service import KeywordDetector
from feedbackshield.services.llm_client import LegitimacyJudgement, normalize_facets
from feedbackshield.services.pattern_store import PatternStore
from feedbackshield.services.transaction_service import MatchOutcome, TransactionVerifier

IDENTITY = "a1b2c3d4e5f6a7b8"
OTHER_IDENTITY = "ffee0011ddcc2233"

PLAUSIBLE_FACETS = {
    "language": "sv",
    "plausibility": 1.0,
    "impossible_claims": [],
    "cultural_mismatch": False,
    "sentiment_claim_coherent": True,
    "suspicious_patterns": [],
    "confidence": 0.9,
    "reasoning": "Ordinary store visit.",
}


class FakeLegitimacyProvider:
    """Returns canned facets, optionally failing or sleeping first."""

    def __init__(self, facets=None, errors=None, delay=0.0):
        self.facets = dict(facets or PLAUSIBLE_FACETS)
        self.errors = list(errors or [])
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def analyze(self, text, business_context):
        with self._lock:
            self.calls += 1
            error = self.errors.pop(0) if self.errors else None
        if self.delay:
            time.sleep(self.delay)
        if error is not None:
            raise error
        return LegitimacyJudgement(facets=normalize_facets(self.facets), raw=dict(self.facets), latency_ms=1.0)


class FakeTransactionProvider:
    def __init__(self, outcome=MatchOutcome.FULL_MATCH, errors=None):
        self.outcome = outcome
        self.errors = list(errors or [])
        self.calls = 0

    def match(self, identity_hash, claimed_amount, claimed_time):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.outcome


def transient_error(message="connection reset"):
    return UpstreamUnavailable(message, provider="fake", transient=True)


@pytest.fixture
def db_engine():
    """Shared in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded_db(db):
    keyword_service.seed_default_keywords(db)
    return db


@pytest.fixture
def make_engine():
    """Factory for engines wired with fake providers and fast retries."""
    engines = []

    def _make(session_factory, provider=None, transaction_provider=None, seed=True, **context_options):
        if seed:
            with session_factory() as session:
                keyword_service.seed_default_keywords(session)
        options = {"timeout_seconds": 1.0, "max_retries": 0, "retry_base_delay": 0.0}
        options.update(context_options)
        store = PatternStore()
        engine = FraudEngine(
            session_factory=session_factory,
            context_analyzer=ContextAnalyzer(provider or FakeLegitimacyProvider(), **options),
            keyword_detector=KeywordDetector(decay_factor=0.5),
            behavioral_detector=BehavioralDetector(store),
            transaction_verifier=TransactionVerifier(transaction_provider, retry_base_delay=0.0),
            pattern_store=store,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def fraud_engine(make_engine, session_factory):
    return make_engine(session_factory)


@pytest.fixture
def client(fraud_engine):
    """FastAPI test client backed by the in-memory engine."""
    from feedbackshield.api.server import app

    app.dependency_overrides[get_engine] = lambda: fraud_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def weekday_noon():
    """Wednesday 2024-03-06 12:00, no night or weekend effects."""
    return datetime(2024, 3, 6, 12, 0)

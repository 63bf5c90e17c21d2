from functools import lru_cache

from feedbackshield.pipelines.fraud_pipeline import FraudEngine, build_engine


@lru_cache(maxsize=1)
def get_engine() -> FraudEngine:
    """Process-wide engine; tests override this dependency."""
    return build_engine()

"""
FraudScore model: one append-only row per scoring run.
"""

import enum

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Index

from feedbackshield.database import Base, utcnow


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Component bounds
MAX_CONTEXT_SCORE = 40.0
MAX_KEYWORD_SCORE = 20.0
MAX_BEHAVIORAL_SCORE = 30.0
MAX_TRANSACTION_SCORE = 10.0

COMPONENT_BOUNDS = {
    "context_score": MAX_CONTEXT_SCORE,
    "keyword_score": MAX_KEYWORD_SCORE,
    "behavioral_score": MAX_BEHAVIORAL_SCORE,
    "transaction_score": MAX_TRANSACTION_SCORE,
}


class FraudScore(Base):
    __tablename__ = "fraud_scores"

    id = Column(Integer, primary_key=True, index=True)
    identity_hash = Column(String(128), nullable=False, index=True)

    # Components (each already weighted by its analyzer)
    context_score = Column(Float, nullable=False, default=0.0)       # 0-40
    keyword_score = Column(Float, nullable=False, default=0.0)       # 0-20
    behavioral_score = Column(Float, nullable=False, default=0.0)    # 0-30
    transaction_score = Column(Float, nullable=False, default=0.0)   # 0-10

    # Derived on every write, never set directly
    composite_score = Column(Float, nullable=False)
    risk_level = Column(String(10), nullable=False)
    fraud_probability = Column(Float, nullable=False)
    confidence_level = Column(Integer, nullable=False)

    analysis_version = Column(String(32), nullable=False)
    analysis_metadata = Column(JSON, nullable=True)  # per-component audit trail

    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_fraud_scores_identity_created", "identity_hash", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FraudScore id={self.id} identity={self.identity_hash[:8]} "
            f"composite={self.composite_score} risk={self.risk_level}>"
        )

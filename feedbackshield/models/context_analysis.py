from sqlalchemy import Column, DateTime, Float, Integer, JSON, String, Text

from feedbackshield.database import Base, utcnow


class ContextAnalysis(Base):
    __tablename__ = "context_analyses"

    id = Column(Integer, primary_key=True, index=True)
    identity_hash = Column(String(128), nullable=False, index=True)

    feedback_content = Column(Text, nullable=False)
    language_detected = Column(String(5), nullable=True)
    business_context = Column(JSON, nullable=True)     # snapshot at analysis time
    external_judgement = Column(JSON, nullable=True)   # raw provider payload

    legitimacy_score = Column(Float, nullable=False, default=0.0)  # 0-40, higher = more suspicious
    confidence_score = Column(Float, nullable=False, default=0.0)  # 0-100
    analysis_metadata = Column(JSON, nullable=True)    # latency, attempts, facets, text stats

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

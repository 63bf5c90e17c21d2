import enum

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text

from feedbackshield.database import Base, utcnow


class PatternType(str, enum.Enum):
    FREQUENCY_ABUSE = "frequency_abuse"
    TIME_ANOMALY = "time_anomaly"
    LOCATION_IMPOSSIBLE = "location_impossible"
    CONTENT_SIMILARITY = "content_similarity"


MAX_PATTERN_RISK = 30.0


class BehavioralPattern(Base):
    """A detected anomaly for one identity, escalated on repeat detection."""
    __tablename__ = "behavioral_patterns"

    id = Column(Integer, primary_key=True, index=True)
    identity_hash = Column(String(128), nullable=False, index=True)
    pattern_type = Column(String(32), nullable=False, index=True)

    risk_score = Column(Float, nullable=False, default=0.0)  # 0-30
    violation_count = Column(Integer, nullable=False, default=1)

    pattern_data = Column(JSON, nullable=True)      # evidence: timestamps, speeds, ratios
    detection_rules = Column(JSON, nullable=True)   # ["frequency.window_exceeded", ...]

    is_resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    first_detected = Column(DateTime, default=utcnow, nullable=False)
    last_updated = Column(DateTime, default=utcnow, nullable=False)

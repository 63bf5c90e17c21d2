"""
Red flag lexicon entries. Curated by operators, deactivated instead of deleted.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from feedbackshield.database import Base, utcnow


class KeywordCategory(str, enum.Enum):
    PROFANITY = "profanity"
    THREATS = "threats"
    NONSENSICAL = "nonsensical"
    IMPOSSIBLE = "impossible"


SUPPORTED_LANGUAGES = ("sv", "en", "no", "da")


class RedFlagKeyword(Base):
    __tablename__ = "red_flag_keywords"

    id = Column(Integer, primary_key=True, index=True)
    keyword = Column(String(100), nullable=False)
    category = Column(String(20), nullable=False, index=True)
    severity_level = Column(Integer, nullable=False)  # 1-10
    language_code = Column(String(5), nullable=False, index=True)
    detection_pattern = Column(String(500), nullable=True)  # optional regex

    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("keyword", "language_code", name="uq_keyword_language"),
    )

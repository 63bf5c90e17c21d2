"""
Red flag keyword lexicon and detector.

Lexicon curation (create, bulk create, update, deactivate, search,
statistics) plus `KeywordDetector`, which scores feedback text against the
active entries for a language.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.errors import PersistenceError, RecordNotFound, ValidationError
from feedbackshield.models.fraud_score import MAX_KEYWORD_SCORE
from feedbackshield.models.red_flag_keyword import (
    KeywordCategory,
    RedFlagKeyword,
    SUPPORTED_LANGUAGES,
)
from feedbackshield.utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

SNIPPET_RADIUS = 50

DEFAULT_KEYWORDS: List[Dict[str, Any]] = [
    # Nonsensical / impossible scenarios
    {"keyword": "flygande elefanter", "category": "nonsensical", "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\b(flygande\s+elefanter|flying\s+elephants)\b"},
    {"keyword": "teleportering", "category": "nonsensical", "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bteleporter(ing|ade)\b"},
    {"keyword": "tidsresor", "category": "nonsensical", "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\btidsres(a|or|ade|an)\b"},
    {"keyword": "magiska krafter", "category": "nonsensical", "severity_level": 6, "language_code": "sv",
     "detection_pattern": r"\bmagiska?\s+krafter\b"},
    {"keyword": "levitating", "category": "nonsensical", "severity_level": 7, "language_code": "en",
     "detection_pattern": r"\blevitat(ing|ed)\b"},
    # Threats
    {"keyword": "bomb", "category": "threats", "severity_level": 10, "language_code": "sv",
     "detection_pattern": r"\bbomb(er|en|ade)?\b"},
    {"keyword": "hot", "category": "threats", "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\bhot(ar|ade|else)?\b"},
    {"keyword": "våld", "category": "threats", "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\bvåld(sam|samma|t)?\b"},
    {"keyword": "skada", "category": "threats", "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bskada(r|de|des)?\b"},
    {"keyword": "döda", "category": "threats", "severity_level": 10, "language_code": "sv",
     "detection_pattern": r"\bdöd(a|ar|ade)\b"},
    # Profanity
    {"keyword": "helvete", "category": "profanity", "severity_level": 5, "language_code": "sv",
     "detection_pattern": r"\bhelvet(e|es)\b"},
    {"keyword": "fan", "category": "profanity", "severity_level": 4, "language_code": "sv",
     "detection_pattern": r"\bfan(en)?\b"},
    {"keyword": "skit", "category": "profanity", "severity_level": 3, "language_code": "sv",
     "detection_pattern": r"\bskit(en|ig|igt)?\b"},
    # Impossible claims
    {"keyword": "gratis allt", "category": "impossible", "severity_level": 8, "language_code": "sv",
     "detection_pattern": r"\bgratis\s+allt\b"},
    {"keyword": "miljoner kronor", "category": "impossible", "severity_level": 9, "language_code": "sv",
     "detection_pattern": r"\bmiljoner?\s+kronor\b"},
    {"keyword": "omedelbar betalning", "category": "impossible", "severity_level": 7, "language_code": "sv",
     "detection_pattern": r"\bomedelbart?\s+betalning(ar)?\b"},
]


# ============== VALIDATION ==============


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE | re.UNICODE)


def validate_keyword_fields(
    keyword: Optional[str] = None,
    category: Optional[str] = None,
    severity_level: Optional[int] = None,
    language_code: Optional[str] = None,
    detection_pattern: Optional[str] = None,
) -> List[str]:
    """Return every problem found; empty list means valid. None fields are skipped."""
    errors = []
    if keyword is not None and not (1 <= len(keyword.strip()) <= 100):
        errors.append("keyword must be 1-100 characters")
    if category is not None and category not in {c.value for c in KeywordCategory}:
        errors.append(f"unknown category '{category}'")
    if severity_level is not None and (
        isinstance(severity_level, bool) or not isinstance(severity_level, int)
        or not 1 <= severity_level <= 10
    ):
        errors.append("severity_level must be an integer 1-10")
    if language_code is not None and language_code not in SUPPORTED_LANGUAGES:
        errors.append(f"unsupported language '{language_code}'")
    if detection_pattern:
        try:
            compile_pattern(detection_pattern)
        except re.error as e:
            errors.append(f"invalid detection_pattern: {e}")
    return errors


def _check(**fields) -> None:
    errors = validate_keyword_fields(**fields)
    if errors:
        raise ValidationError("; ".join(errors))


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to {action}: {e}") from e


# ============== CURATION ==============


def create_keyword(
    db: Session,
    keyword: str,
    category: str,
    severity_level: int,
    language_code: str = "sv",
    detection_pattern: Optional[str] = None,
    created_by: Optional[str] = None,
) -> RedFlagKeyword:
    _check(
        keyword=keyword,
        category=category,
        severity_level=severity_level,
        language_code=language_code,
        detection_pattern=detection_pattern,
    )
    entry = RedFlagKeyword(
        keyword=keyword.strip().lower(),
        category=category,
        severity_level=severity_level,
        language_code=language_code,
        detection_pattern=detection_pattern or None,
        created_by=created_by,
        is_active=True,
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError(
            f"keyword '{entry.keyword}' already exists for language '{language_code}'",
            field="keyword",
        ) from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to create keyword: {e}") from e
    db.refresh(entry)
    logger.info("Keyword created", keyword=entry.keyword, category=category, severity=severity_level)
    return entry


def bulk_create_keywords(
    db: Session,
    keywords: Iterable[Dict[str, Any]],
    created_by: Optional[str] = None,
) -> Tuple[List[RedFlagKeyword], List[str]]:
    """
    Create many entries; invalid or duplicate ones are reported, not fatal.

    Returns:
        (created, errors)
    """
    created: List[RedFlagKeyword] = []
    errors: List[str] = []
    for i, data in enumerate(keywords):
        try:
            created.append(create_keyword(db, created_by=created_by, **data))
        except (ValidationError, TypeError) as e:
            errors.append(f"#{i} {data.get('keyword', '?')}: {e}")
    return created, errors


def get_keyword(db: Session, keyword_id: int) -> RedFlagKeyword:
    entry = db.get(RedFlagKeyword, keyword_id)
    if entry is None:
        raise RecordNotFound("keyword", keyword_id)
    return entry


def get_active_keywords(
    db: Session,
    language: Optional[str] = None,
    category: Optional[str] = None,
) -> List[RedFlagKeyword]:
    query = db.query(RedFlagKeyword).filter(RedFlagKeyword.is_active.is_(True))
    if language:
        query = query.filter(RedFlagKeyword.language_code == language)
    if category:
        _check(category=category)
        query = query.filter(RedFlagKeyword.category == category)
    return query.order_by(RedFlagKeyword.severity_level.desc(), RedFlagKeyword.keyword).all()


def get_keywords_by_category(
    db: Session,
    category: str,
    language: Optional[str] = None,
) -> List[RedFlagKeyword]:
    return get_active_keywords(db, language=language, category=category)


def search_keywords(
    db: Session,
    query_text: str,
    language: Optional[str] = None,
    include_inactive: bool = False,
    limit: int = 50,
) -> List[RedFlagKeyword]:
    query = db.query(RedFlagKeyword).filter(
        or_(
            RedFlagKeyword.keyword.ilike(f"%{query_text}%"),
            RedFlagKeyword.detection_pattern.ilike(f"%{query_text}%"),
        )
    )
    if not include_inactive:
        query = query.filter(RedFlagKeyword.is_active.is_(True))
    if language:
        query = query.filter(RedFlagKeyword.language_code == language)
    return query.order_by(RedFlagKeyword.keyword).limit(limit).all()


def update_keyword(db: Session, keyword_id: int, **changes) -> RedFlagKeyword:
    allowed = {"category", "severity_level", "detection_pattern", "is_active"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")

    _check(
        category=changes.get("category"),
        severity_level=changes.get("severity_level"),
        detection_pattern=changes.get("detection_pattern"),
    )
    entry = get_keyword(db, keyword_id)
    for name, value in changes.items():
        if value is not None:
            setattr(entry, name, value)
    _commit(db, "update keyword")
    db.refresh(entry)
    return entry


def deactivate_keyword(db: Session, keyword_id: int) -> RedFlagKeyword:
    """Soft delete: historical detections keep referring to the entry."""
    entry = update_keyword(db, keyword_id, is_active=False)
    logger.info("Keyword deactivated", keyword_id=keyword_id, keyword=entry.keyword)
    return entry


def seed_default_keywords(db: Session) -> int:
    """Insert the default lexicon into an empty table. Returns rows inserted."""
    if db.query(RedFlagKeyword.id).first() is not None:
        return 0
    created, errors = bulk_create_keywords(db, DEFAULT_KEYWORDS, created_by="system")
    for error in errors:
        logger.warning("Default keyword skipped", error=error)
    return len(created)


def get_keyword_statistics(db: Session, language: Optional[str] = None) -> Dict[str, Any]:
    query = db.query(RedFlagKeyword)
    if language:
        query = query.filter(RedFlagKeyword.language_code == language)
    entries = query.all()

    category_distribution = {c.value: 0 for c in KeywordCategory}
    severity_distribution: Dict[str, int] = {}
    language_distribution: Dict[str, int] = {}
    for entry in entries:
        category_distribution[entry.category] = category_distribution.get(entry.category, 0) + 1
        level = f"level_{entry.severity_level}"
        severity_distribution[level] = severity_distribution.get(level, 0) + 1
        language_distribution[entry.language_code] = language_distribution.get(entry.language_code, 0) + 1

    total = len(entries)
    return {
        "total_keywords": total,
        "active_keywords": sum(1 for e in entries if e.is_active),
        "category_distribution": category_distribution,
        "severity_distribution": severity_distribution,
        "language_distribution": language_distribution,
        "average_severity": round(sum(e.severity_level for e in entries) / total, 2) if total else 0.0,
    }


# ============== DETECTION ==============


@dataclass
class KeywordMatch:
    keyword: str
    category: str
    severity: int
    occurrences: int
    matched_by: str  # "literal", "pattern" or "literal+pattern"
    snippet: str


@dataclass
class KeywordDetection:
    matches: List[KeywordMatch] = field(default_factory=list)
    score: float = 0.0
    language: str = "sv"
    category_distribution: Dict[str, int] = field(default_factory=dict)


@lru_cache(maxsize=512)
def _literal_pattern(keyword: str) -> "re.Pattern[str]":
    return re.compile(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)", re.IGNORECASE)


def _snippet(text: str, start: int, end: int) -> str:
    return text[max(0, start - SNIPPET_RADIUS): min(len(text), end + SNIPPET_RADIUS)]


def _merge_spans(spans: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def score_matches(matches: List[KeywordMatch], decay: float) -> float:
    """
    Diminishing sum of severities, strongest first, capped at 20.

    The first match counts in full, every further distinct keyword counts
    `decay` times its severity.
    """
    total = 0.0
    for i, match in enumerate(sorted(matches, key=lambda m: -m.severity)):
        total += match.severity if i == 0 else match.severity * decay
    return round(min(MAX_KEYWORD_SCORE, total), 2)


class KeywordDetector:
    """Scores text against the active lexicon for one language."""

    def __init__(self, decay_factor: Optional[float] = None):
        self.decay_factor = decay_factor if decay_factor is not None else settings.keyword_decay_factor

    def match_entries(self, text: str, entries: Iterable[RedFlagKeyword]) -> List[KeywordMatch]:
        matches = []
        for entry in entries:
            # Whole words only: "fan" must not fire inside "fantastisk"
            literal_hits = [m.span() for m in _literal_pattern(entry.keyword).finditer(text)]

            pattern_hits = []
            if entry.detection_pattern:
                try:
                    pattern_hits = [m.span() for m in compile_pattern(entry.detection_pattern).finditer(text)]
                except re.error as e:
                    logger.warning("Invalid keyword pattern skipped", keyword=entry.keyword, error=str(e))

            if not literal_hits and not pattern_hits:
                continue

            # Overlapping hits from both methods are one occurrence
            spans = _merge_spans(literal_hits + pattern_hits)
            matched_by = "+".join(
                name for name, hits in (("literal", literal_hits), ("pattern", pattern_hits)) if hits
            )
            matches.append(KeywordMatch(
                keyword=entry.keyword,
                category=entry.category,
                severity=entry.severity_level,
                occurrences=len(spans),
                matched_by=matched_by,
                snippet=_snippet(text, *spans[0]),
            ))

        matches.sort(key=lambda m: (-m.severity, m.keyword))
        return matches

    def detect(self, db: Session, text: str, language: Optional[str] = None) -> KeywordDetection:
        language = language or settings.default_language
        _check(language_code=language)

        entries = get_active_keywords(db, language=language)
        matches = self.match_entries(text or "", entries)

        distribution = {c.value: 0 for c in KeywordCategory}
        for match in matches:
            distribution[match.category] = distribution.get(match.category, 0) + 1

        detection = KeywordDetection(
            matches=matches,
            score=score_matches(matches, self.decay_factor),
            language=language,
            category_distribution=distribution,
        )
        if matches:
            logger.debug(
                "Keywords matched",
                language=language,
                count=len(matches),
                score=detection.score,
            )
        return detection

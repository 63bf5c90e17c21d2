"""
Pattern store: the only writer of BehavioralPattern rows.

Lifecycle per identity and pattern type:
no pattern -> detected -> repeat-detected (escalating) -> resolved.
A resolved row is never reopened; the next detection starts a new row.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.database import utcnow
from feedbackshield.errors import PersistenceError, RecordNotFound, ValidationError
from feedbackshield.models.behavioral_pattern import (
    BehavioralPattern,
    MAX_PATTERN_RISK,
    PatternType,
)
from feedbackshield.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

MAX_EVIDENCE_HISTORY = 20

# Bands on the 0-30 pattern risk scale, inclusive lower bounds
PATTERN_RISK_BANDS = (
    (25.0, "critical"),
    (20.0, "high"),
    (10.0, "medium"),
    (0.0, "low"),
)


def validate_pattern_type(pattern_type: str) -> str:
    if pattern_type not in {p.value for p in PatternType}:
        raise ValidationError(f"unknown pattern type '{pattern_type}'", field="pattern_type")
    return pattern_type


def pattern_risk_band(risk_score: float) -> str:
    for threshold, band in PATTERN_RISK_BANDS:
        if risk_score >= threshold:
            return band
    return "low"


def composite_pattern_score(risk_scores: List[float]) -> float:
    """
    Behavioral component (0-30) from the identity's active patterns.

    Mean risk plus up to 5 points for having several pattern types at once.
    """
    if not risk_scores:
        return 0.0
    average = sum(risk_scores) / len(risk_scores)
    multi_pattern_bonus = min(5.0, (len(risk_scores) - 1) * 2.0)
    return round(min(MAX_PATTERN_RISK, average + multi_pattern_bonus), 2)


def _parse_watermark(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _pattern_data(
    latest: Dict[str, Any],
    history: List[Dict[str, Any]],
    evidence_times: List[datetime],
    counted_until: Optional[datetime],
) -> Dict[str, Any]:
    newest = max([t for t in (evidence_times[-1:] + [counted_until]) if t is not None], default=None)
    return {
        "latest": latest,
        "history": history,
        "evidence_until": newest.isoformat() if newest is not None else None,
    }


class PatternStore:
    """
    Persistence and statistics for behavioral patterns.

    Callers pass the session; the store commits its own writes.
    """

    def __init__(
        self,
        repeat_window_hours: Optional[int] = None,
        escalation_step: Optional[float] = None,
    ):
        self.repeat_window = timedelta(
            hours=repeat_window_hours if repeat_window_hours is not None else settings.pattern_repeat_window_hours
        )
        self.escalation_step = escalation_step if escalation_step is not None else settings.pattern_escalation_step

    # ============== WRITES ==============

    def record_detection(
        self,
        db: Session,
        identity_hash: str,
        pattern_type: str,
        risk_score: float,
        violations: int,
        evidence: Dict[str, Any],
        rules: List[str],
        now: Optional[datetime] = None,
        evidence_times: Optional[List[datetime]] = None,
    ) -> BehavioralPattern:
        """
        Create a pattern, or escalate the open one of the same type.

        An unresolved pattern last updated within the repeat window absorbs the
        detection: violations add up, risk never decreases and steps up on each
        repeat, evidence is appended, rules are unioned.

        ``evidence_times`` are the call timestamps behind the violations. The
        newest one counted is kept on the row, and a repeat detection only
        counts the violations after it. With nothing new the row is returned
        untouched.
        """
        validate_pattern_type(pattern_type)
        if risk_score < 0 or risk_score > MAX_PATTERN_RISK:
            raise ValidationError(f"pattern risk {risk_score} outside [0, {MAX_PATTERN_RISK:g}]", field="risk_score")
        now = now or utcnow()
        violations = max(1, int(violations))
        evidence_times = sorted(evidence_times or [])

        existing = (
            db.query(BehavioralPattern)
            .filter(
                BehavioralPattern.identity_hash == identity_hash,
                BehavioralPattern.pattern_type == pattern_type,
                BehavioralPattern.is_resolved.is_(False),
                BehavioralPattern.last_updated >= now - self.repeat_window,
            )
            .order_by(BehavioralPattern.last_updated.desc(), BehavioralPattern.id.desc())
            .first()
        )

        if existing is None:
            pattern = BehavioralPattern(
                identity_hash=identity_hash,
                pattern_type=pattern_type,
                risk_score=round(risk_score, 2),
                violation_count=violations,
                pattern_data=_pattern_data(evidence, [evidence], evidence_times, None),
                detection_rules=sorted(set(rules)),
                is_resolved=False,
                first_detected=now,
                last_updated=now,
            )
            db.add(pattern)
            action = "created"
        else:
            pattern = existing
            data = pattern.pattern_data or {}
            counted_until = _parse_watermark(data.get("evidence_until"))
            if evidence_times and counted_until is not None:
                new_violations = min(violations, sum(1 for t in evidence_times if t > counted_until))
            else:
                new_violations = violations
            if new_violations == 0:
                metrics.increment(f"patterns.{pattern_type}.unchanged")
                return pattern

            pattern.violation_count = (pattern.violation_count or 0) + new_violations
            pattern.risk_score = round(
                min(MAX_PATTERN_RISK, max(pattern.risk_score, risk_score) + self.escalation_step), 2
            )
            history = list(data.get("history", []))
            history.append(evidence)
            # New objects so the JSON columns are flagged dirty
            pattern.pattern_data = _pattern_data(
                evidence, history[-MAX_EVIDENCE_HISTORY:], evidence_times, counted_until
            )
            pattern.detection_rules = sorted(set(pattern.detection_rules or []) | set(rules))
            pattern.last_updated = now
            action = "escalated"

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to record {pattern_type} pattern: {e}") from e
        db.refresh(pattern)

        metrics.increment(f"patterns.{pattern_type}.{action}")
        logger.info(
            f"Behavioral pattern {action}",
            pattern_id=pattern.id,
            pattern_type=pattern_type,
            risk_score=pattern.risk_score,
            violation_count=pattern.violation_count,
        )
        return pattern

    def resolve_pattern(self, db: Session, pattern_id: int, notes: str) -> BehavioralPattern:
        """Mark resolved with a mandatory note. The row is kept for audit."""
        if not notes or not notes.strip():
            raise ValidationError("resolution notes are required", field="notes")

        pattern = db.get(BehavioralPattern, pattern_id)
        if pattern is None:
            raise RecordNotFound("pattern", pattern_id)

        now = utcnow()
        pattern.is_resolved = True
        pattern.resolution_notes = notes.strip()
        pattern.resolved_at = now
        pattern.last_updated = now
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to resolve pattern {pattern_id}: {e}") from e
        db.refresh(pattern)
        logger.info("Behavioral pattern resolved", pattern_id=pattern_id, pattern_type=pattern.pattern_type)
        return pattern

    def delete_old_resolved(self, db: Session, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        try:
            deleted = (
                db.query(BehavioralPattern)
                .filter(
                    BehavioralPattern.is_resolved.is_(True),
                    BehavioralPattern.last_updated < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to delete resolved patterns: {e}") from e
        return deleted

    # ============== READS ==============

    def get_patterns(
        self,
        db: Session,
        identity_hash: str,
        pattern_types: Optional[Iterable[str]] = None,
        include_resolved: bool = False,
        since: Optional[datetime] = None,
    ) -> List[BehavioralPattern]:
        query = db.query(BehavioralPattern).filter(BehavioralPattern.identity_hash == identity_hash)
        if pattern_types:
            query = query.filter(BehavioralPattern.pattern_type.in_(
                [validate_pattern_type(p) for p in pattern_types]
            ))
        if not include_resolved:
            query = query.filter(BehavioralPattern.is_resolved.is_(False))
        if since is not None:
            query = query.filter(BehavioralPattern.last_updated >= since)
        return query.order_by(BehavioralPattern.last_updated.desc(), BehavioralPattern.id.desc()).all()

    def get_active_patterns(self, db: Session, identity_hash: str, now: Optional[datetime] = None) -> List[BehavioralPattern]:
        """Unresolved patterns still inside the repeat window."""
        now = now or utcnow()
        return self.get_patterns(db, identity_hash, since=now - self.repeat_window)

    def behavioral_score(self, db: Session, identity_hash: str, now: Optional[datetime] = None) -> float:
        return composite_pattern_score([p.risk_score for p in self.get_active_patterns(db, identity_hash, now)])

    def get_bulk_patterns(
        self,
        db: Session,
        identity_hashes: List[str],
        include_resolved: bool = False,
    ) -> Dict[str, List[BehavioralPattern]]:
        result: Dict[str, List[BehavioralPattern]] = {h: [] for h in identity_hashes}
        if not identity_hashes:
            return result
        query = db.query(BehavioralPattern).filter(BehavioralPattern.identity_hash.in_(identity_hashes))
        if not include_resolved:
            query = query.filter(BehavioralPattern.is_resolved.is_(False))
        for pattern in query.order_by(BehavioralPattern.last_updated.desc()).all():
            result[pattern.identity_hash].append(pattern)
        return result

    def get_critical_patterns(
        self,
        db: Session,
        risk_threshold: Optional[float] = None,
        limit: int = 50,
    ) -> List[BehavioralPattern]:
        """Unresolved patterns at or above the threshold, riskiest first."""
        threshold = risk_threshold if risk_threshold is not None else settings.critical_pattern_threshold
        return (
            db.query(BehavioralPattern)
            .filter(
                BehavioralPattern.is_resolved.is_(False),
                BehavioralPattern.risk_score >= threshold,
            )
            .order_by(BehavioralPattern.risk_score.desc(), BehavioralPattern.last_updated.desc())
            .limit(limit)
            .all()
        )

    def get_statistics(
        self,
        db: Session,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        pattern_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        query = db.query(BehavioralPattern)
        if start is not None:
            query = query.filter(BehavioralPattern.first_detected >= start)
        if end is not None:
            query = query.filter(BehavioralPattern.first_detected <= end)
        if pattern_type:
            query = query.filter(BehavioralPattern.pattern_type == validate_pattern_type(pattern_type))
        patterns = query.all()

        type_distribution = {p.value: 0 for p in PatternType}
        risk_distribution = {band: 0 for _, band in reversed(PATTERN_RISK_BANDS)}
        rule_counts: Dict[str, int] = {}
        for pattern in patterns:
            type_distribution[pattern.pattern_type] = type_distribution.get(pattern.pattern_type, 0) + 1
            risk_distribution[pattern_risk_band(pattern.risk_score)] += 1
            for rule in pattern.detection_rules or []:
                rule_counts[rule] = rule_counts.get(rule, 0) + 1

        total = len(patterns)
        unresolved = sum(1 for p in patterns if not p.is_resolved)
        top_rules = sorted(rule_counts.items(), key=lambda item: (-item[1], item[0]))[:10]

        return {
            "total_patterns": total,
            "unresolved_patterns": unresolved,
            "type_distribution": type_distribution,
            "risk_distribution": risk_distribution,
            "average_risk_score": round(sum(p.risk_score for p in patterns) / total, 2) if total else 0.0,
            "average_violation_count": round(sum(p.violation_count for p in patterns) / total, 2) if total else 0.0,
            "resolution_rate": round((total - unresolved) / total * 100, 2) if total else 0.0,
            "top_risk_factors": [{"rule": rule, "count": count} for rule, count in top_rules],
        }

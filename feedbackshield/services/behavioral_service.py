"""
Behavioral pattern detection over a caller's recent activity.

Four detectors (call frequency, time of day, travel, content similarity)
turn the call history into a feature dict, evaluate their detection rules
and hand any detection to the PatternStore. The behavioral component is
then derived from the identity's active patterns, so history from earlier
scoring runs keeps counting until it is resolved.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Any, Dict, List, Optional, Sequence, Set
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from feedbackshield.config import settings
from feedbackshield.models.behavioral_pattern import MAX_PATTERN_RISK, PatternType
from feedbackshield.schemas.fraud_schemas import CallEvent
from feedbackshield.services.pattern_store import PatternStore
from feedbackshield.utils.logging_config import StructuredLogger, log_execution_time
from feedbackshield.utils.preprocessing import tokenize
from feedbackshield.utils.rules import AllOf, Condition, DetectionRule, fired_rules

logger = StructuredLogger(__name__)

EARTH_RADIUS_KM = 6371.0
NIGHT_HOURS = {22, 23, 0, 1, 2, 3, 4, 5}
RAPID_SUCCESSION = timedelta(minutes=2)
SIMULTANEOUS_DISTANCE_KM = 1.0
MIN_CALLS_FOR_TIME_ANALYSIS = 3
MIN_TEXTS_FOR_SCRIPT_ANALYSIS = 3
SCRIPT_PHRASE_LENGTH = 3


@dataclass
class Detection:
    pattern_type: str
    risk_score: float
    violations: int
    rules: List[str]
    evidence: Dict[str, Any]
    # Call timestamps behind the violations
    evidence_times: List[datetime] = field(default_factory=list)


@dataclass
class BehavioralResult:
    score: float
    detections: List[Detection] = field(default_factory=list)
    pattern_ids: List[int] = field(default_factory=list)


# ============== GEOMETRY & TEXT HELPERS ==============


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def jaccard_similarity(a: str, b: str) -> float:
    words_a, words_b = set(tokenize(a)), set(tokenize(b))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def _phrases(text: str, length: int) -> Set[str]:
    words = tokenize(text)
    return {" ".join(words[i:i + length]) for i in range(len(words) - length + 1)}


def _hour_of_day(ts: datetime) -> float:
    return ts.hour + ts.minute / 60.0


def circular_hour_stats(hours: Sequence[float]):
    """
    Circular mean and standard deviation (both in hours) of times of day.

    Returns (None, None) when the hours cancel out and no mean exists.
    """
    angles = [2 * math.pi * h / 24.0 for h in hours]
    sin_mean = sum(math.sin(a) for a in angles) / len(angles)
    cos_mean = sum(math.cos(a) for a in angles) / len(angles)
    resultant = math.hypot(sin_mean, cos_mean)
    if resultant < 1e-9:
        return None, None
    mean_angle = math.atan2(sin_mean, cos_mean) % (2 * math.pi)
    std_angle = math.sqrt(-2.0 * math.log(min(1.0, resultant)))
    to_hours = 24.0 / (2 * math.pi)
    return mean_angle * to_hours, std_angle * to_hours


def circular_hour_distance(a: float, b: float) -> float:
    diff = abs(a - b) % 24.0
    return min(diff, 24.0 - diff)


def _iso(ts: datetime) -> str:
    return ts.isoformat()


# ============== DETECTOR ==============


class BehavioralDetector:
    """
    Runs the four detectors for one identity and records what fires.

    Thresholds default to settings; tests pass explicit values.
    """

    def __init__(
        self,
        pattern_store: PatternStore,
        window_minutes: Optional[int] = None,
        frequency_threshold: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        max_speed_kmh: Optional[float] = None,
        min_history: Optional[int] = None,
        recent_hours: Optional[int] = None,
        timezone_name: Optional[str] = None,
    ):
        self.store = pattern_store
        self.window = timedelta(
            minutes=window_minutes if window_minutes is not None else settings.frequency_window_minutes
        )
        self.frequency_threshold = (
            frequency_threshold if frequency_threshold is not None else settings.frequency_threshold
        )
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None else settings.similarity_threshold
        )
        self.max_speed_kmh = max_speed_kmh if max_speed_kmh is not None else settings.max_travel_speed_kmh
        self.min_history = min_history if min_history is not None else settings.time_anomaly_min_history
        self.recent = timedelta(
            hours=recent_hours if recent_hours is not None else settings.time_anomaly_recent_hours
        )
        self.timezone = ZoneInfo(timezone_name or settings.local_timezone)

        enough_calls = Condition("call_count", ">=", MIN_CALLS_FOR_TIME_ANALYSIS)
        self.frequency_rules = [
            DetectionRule(
                "frequency.window_exceeded",
                "More calls inside one window than the threshold allows",
                Condition("max_calls_in_window", ">", self.frequency_threshold),
            ),
            DetectionRule(
                "frequency.burst",
                "At least twice the threshold inside one window",
                Condition("max_calls_in_window", ">=", self.frequency_threshold * 2),
            ),
            DetectionRule(
                "frequency.sustained",
                "Threshold exceeded in three or more windows",
                Condition("violating_windows", ">=", 3),
            ),
        ]
        self.time_rules = [
            DetectionRule(
                "time.night_cluster",
                "More than two calls between 22:00 and 06:00",
                AllOf(enough_calls, Condition("night_calls", ">", 2)),
            ),
            DetectionRule(
                "time.off_pattern",
                "Recent calls far outside the caller's usual hours",
                AllOf(
                    enough_calls,
                    Condition("baseline_size", ">=", self.min_history),
                    Condition("off_pattern_calls", ">=", 2),
                ),
            ),
            DetectionRule(
                "time.weekend_cluster",
                "Calls concentrated on weekends",
                AllOf(enough_calls, Condition("weekend_calls", ">", 3), Condition("weekend_excess", ">", 0)),
            ),
            DetectionRule(
                "time.rapid_succession",
                "Several consecutive calls less than two minutes apart",
                AllOf(enough_calls, Condition("rapid_pairs", ">", 1)),
            ),
        ]
        self.location_rules = [
            DetectionRule(
                "location.impossible_travel",
                "Implied travel speed above the plausible maximum",
                Condition("impossible_hops", ">=", 1),
            ),
            DetectionRule(
                "location.simultaneous_calls",
                "Calls at the same moment from distant places",
                Condition("simultaneous_hops", ">=", 1),
            ),
        ]
        self.similarity_rules = [
            DetectionRule(
                "similarity.near_duplicate",
                "Feedback texts nearly identical across calls",
                Condition("similar_pairs", ">=", 1),
            ),
            DetectionRule(
                "similarity.exact_duplicate",
                "Identical feedback text across calls",
                Condition("max_similarity", ">=", 1.0),
            ),
            DetectionRule(
                "similarity.scripted_phrases",
                "Same phrases repeated in most calls",
                AllOf(
                    Condition("text_count", ">=", MIN_TEXTS_FOR_SCRIPT_ANALYSIS),
                    Condition("repeated_phrases", ">", 2),
                ),
            ),
        ]

    # ---------- frequency ----------

    def detect_frequency(self, calls: List[CallEvent]) -> Optional[Detection]:
        times = sorted(call.timestamp for call in calls)
        counts = []
        start = 0
        # Trailing window (t - window, t] for every call
        for end, ts in enumerate(times):
            while times[start] <= ts - self.window:
                start += 1
            counts.append(end - start + 1)

        max_count = max(counts, default=0)
        violating_times = [ts for ts, c in zip(times, counts) if c > self.frequency_threshold]
        violating = len(violating_times)
        features = {"max_calls_in_window": max_count, "violating_windows": violating}
        rules = fired_rules(self.frequency_rules, features)
        if not rules:
            return None

        excess = max_count - self.frequency_threshold
        risk = min(20.0, violating * 2.0) + min(10.0, excess * 1.5)
        peak = counts.index(max_count)
        return Detection(
            pattern_type=PatternType.FREQUENCY_ABUSE.value,
            risk_score=round(min(MAX_PATTERN_RISK, risk), 2),
            violations=violating,
            rules=rules,
            evidence_times=violating_times,
            evidence={
                **features,
                "threshold": self.frequency_threshold,
                "window_minutes": int(self.window.total_seconds() // 60),
                "peak_window_end": _iso(times[peak]),
                "call_times": [_iso(t) for t in times[-20:]],
            },
        )

    # ---------- time of day ----------

    def _local(self, ts: datetime) -> datetime:
        """Stored timestamps are naive UTC; time-of-day rules use local time."""
        return ts.replace(tzinfo=timezone.utc).astimezone(self.timezone)

    def detect_time_anomaly(self, calls: List[CallEvent]) -> Optional[Detection]:
        times = sorted(call.timestamp for call in calls)
        if len(times) < MIN_CALLS_FOR_TIME_ANALYSIS:
            return None

        local = {t: self._local(t) for t in times}
        night = [t for t in times if local[t].hour in NIGHT_HOURS]
        weekend = [t for t in times if local[t].weekday() >= 5]
        rapid = [b for a, b in zip(times, times[1:]) if b - a < RAPID_SUCCESSION]
        rapid_pairs = len(rapid)

        cutoff = times[-1] - self.recent
        baseline = [t for t in times if t < cutoff]
        recent = [t for t in times if t >= cutoff]
        off_pattern: List[datetime] = []
        mean_hour = std_hour = None
        if len(baseline) >= self.min_history:
            mean_hour, std_hour = circular_hour_stats([_hour_of_day(local[t]) for t in baseline])
            if mean_hour is not None:
                spread = max(std_hour, 1.0)
                off_pattern = [
                    t for t in recent
                    if circular_hour_distance(_hour_of_day(local[t]), mean_hour) > 2 * spread
                ]

        features = {
            "call_count": len(times),
            "night_calls": len(night),
            "weekend_calls": len(weekend),
            "weekend_excess": len(weekend) - (len(times) - len(weekend)),
            "rapid_pairs": rapid_pairs,
            "baseline_size": len(baseline),
            "off_pattern_calls": len(off_pattern),
        }
        rules = fired_rules(self.time_rules, features)
        if not rules:
            return None

        severities = {
            "time.night_cluster": min(10.0, len(night) * 2.0),
            "time.off_pattern": min(10.0, len(off_pattern) * 3.0),
            "time.weekend_cluster": min(8.0, float(features["weekend_excess"])),
            "time.rapid_succession": min(10.0, rapid_pairs * 2.0),
        }
        rule_times = {
            "time.night_cluster": night,
            "time.off_pattern": off_pattern,
            "time.weekend_cluster": weekend,
            "time.rapid_succession": rapid,
        }
        risk = sum(severities[rule] for rule in rules)
        return Detection(
            pattern_type=PatternType.TIME_ANOMALY.value,
            risk_score=round(min(MAX_PATTERN_RISK, risk), 2),
            violations=len(rules),
            rules=rules,
            evidence_times=sorted({t for rule in rules for t in rule_times[rule]}),
            evidence={
                **features,
                "baseline_mean_hour": round(mean_hour, 2) if mean_hour is not None else None,
                "baseline_std_hours": round(std_hour, 2) if std_hour is not None else None,
                "night_call_times": [_iso(t) for t in night[-10:]],
                "off_pattern_times": [_iso(t) for t in off_pattern[-10:]],
            },
        )

    # ---------- travel ----------

    def detect_location(self, calls: List[CallEvent]) -> Optional[Detection]:
        located = sorted((c for c in calls if c.location is not None), key=lambda c: c.timestamp)
        hops = []
        hop_times: List[datetime] = []
        for prev, curr in zip(located, located[1:]):
            distance = haversine_km(
                prev.location.latitude, prev.location.longitude,
                curr.location.latitude, curr.location.longitude,
            )
            hours = (curr.timestamp - prev.timestamp).total_seconds() / 3600.0
            if hours <= 0:
                if distance <= SIMULTANEOUS_DISTANCE_KM:
                    continue
                speed = math.inf
            else:
                speed = distance / hours
            if speed > self.max_speed_kmh:
                hops.append({
                    "from": [prev.location.latitude, prev.location.longitude],
                    "to": [curr.location.latitude, curr.location.longitude],
                    "distance_km": round(distance, 1),
                    "hours": round(hours, 3),
                    "speed_kmh": None if math.isinf(speed) else round(speed, 1),
                    "at": _iso(curr.timestamp),
                    "severity": 10.0 if math.isinf(speed) else round(min(10.0, speed / 100.0), 2),
                })
                hop_times.append(curr.timestamp)

        simultaneous = sum(1 for h in hops if h["speed_kmh"] is None)
        features = {
            "located_calls": len(located),
            "impossible_hops": len(hops) - simultaneous,
            "simultaneous_hops": simultaneous,
        }
        rules = fired_rules(self.location_rules, features)
        if not rules:
            return None

        risk = sum(h["severity"] for h in hops)
        return Detection(
            pattern_type=PatternType.LOCATION_IMPOSSIBLE.value,
            risk_score=round(min(MAX_PATTERN_RISK, risk), 2),
            violations=len(hops),
            rules=rules,
            evidence_times=hop_times,
            evidence={**features, "max_speed_kmh": self.max_speed_kmh, "hops": hops[-10:]},
        )

    # ---------- content ----------

    def detect_similarity(self, calls: List[CallEvent]) -> Optional[Detection]:
        texts = [(c, c.feedback_text) for c in calls if c.feedback_text and c.feedback_text.strip()]
        pairs = []
        pair_times: List[datetime] = []
        max_similarity = 0.0
        for (call_a, text_a), (call_b, text_b) in combinations(texts, 2):
            similarity = jaccard_similarity(text_a, text_b)
            max_similarity = max(max_similarity, similarity)
            if similarity >= self.similarity_threshold:
                pairs.append({
                    "calls": [call_a.call_id, call_b.call_id],
                    "similarity": round(similarity, 3),
                    "severity": max(1, round((similarity - 0.8) * 50)),
                })
                pair_times.append(max(call_a.timestamp, call_b.timestamp))

        phrase_counts: Dict[str, int] = {}
        for _, text in texts:
            for phrase in _phrases(text, SCRIPT_PHRASE_LENGTH):
                phrase_counts[phrase] = phrase_counts.get(phrase, 0) + 1
        repeated = sorted(p for p, n in phrase_counts.items() if n > len(texts) * 0.5 and n > 1)

        features = {
            "text_count": len(texts),
            "similar_pairs": len(pairs),
            "max_similarity": round(max_similarity, 3),
            "repeated_phrases": len(repeated),
        }
        rules = fired_rules(self.similarity_rules, features)
        if not rules:
            return None

        risk = sum(p["severity"] for p in pairs)
        evidence_times = sorted(pair_times)
        if "similarity.scripted_phrases" in rules:
            risk += min(10, len(repeated))
            if not evidence_times:
                evidence_times = [max(call.timestamp for call, _ in texts)]
        return Detection(
            pattern_type=PatternType.CONTENT_SIMILARITY.value,
            risk_score=round(min(MAX_PATTERN_RISK, float(risk)), 2),
            violations=max(1, len(pairs)),
            rules=rules,
            evidence_times=evidence_times,
            evidence={**features, "pairs": pairs[:10], "phrases": repeated[:10]},
        )

    # ---------- orchestration ----------

    def detect_all(self, calls: List[CallEvent]) -> List[Detection]:
        detections = []
        for detector in (
            self.detect_frequency,
            self.detect_time_anomaly,
            self.detect_location,
            self.detect_similarity,
        ):
            detection = detector(calls)
            if detection is not None:
                detections.append(detection)
        return detections

    @log_execution_time("feedbackshield.behavioral")
    def analyze(
        self,
        db: Session,
        identity_hash: str,
        calls: List[CallEvent],
        now: Optional[datetime] = None,
    ) -> BehavioralResult:
        """
        Detect, record and score.

        Calls already counted for an open pattern do not escalate it again, so
        re-scoring the same history leaves the component unchanged.

        The caller must serialize calls for the same identity: recording is a
        read-modify-write on the open pattern rows.
        """
        detections = self.detect_all(calls) if calls else []
        pattern_ids = []
        for detection in detections:
            pattern = self.store.record_detection(
                db,
                identity_hash,
                detection.pattern_type,
                detection.risk_score,
                detection.violations,
                detection.evidence,
                detection.rules,
                now=now,
                evidence_times=detection.evidence_times,
            )
            pattern_ids.append(pattern.id)

        score = self.store.behavioral_score(db, identity_hash, now=now)
        if detections:
            logger.info(
                "Behavioral anomalies detected",
                pattern_types=[d.pattern_type for d in detections],
                behavioral_score=score,
            )
        return BehavioralResult(score=score, detections=detections, pattern_ids=pattern_ids)

"""
Explainability utilities.

Turns a FraudScore's component values into contributing factors,
qualitative indicators, recommendations and a one-paragraph summary.
Band thresholds are inclusive lower bounds on each component's own scale.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from feedbackshield.models.fraud_score import COMPONENT_BOUNDS


@dataclass
class ContributingFactor:
    """One component's share of the composite score."""
    component: str
    score: float
    max_score: float
    weight_percent: float  # share of the 100-point composite this component can reach
    confidence: float      # score / max * 100
    indicators: List[str]


# Primary band: first match wins. Secondary: every match is added.
PRIMARY_BANDS: Dict[str, List[Tuple[float, str]]] = {
    "context": [
        (30, "Highly suspicious content detected"),
        (20, "Suspicious content patterns"),
        (10, "Minor content irregularities"),
    ],
    "keyword": [
        (15, "High-severity red flag keywords"),
        (10, "Multiple red flag keywords"),
        (5, "Red flag keywords detected"),
    ],
    "behavioral": [
        (25, "Severe behavioral anomalies"),
        (15, "Multiple behavioral red flags"),
        (8, "Suspicious behavioral patterns"),
    ],
    "transaction": [
        (8, "Transaction verification failed"),
        (5, "Transaction anomalies detected"),
        (3, "Minor transaction inconsistencies"),
    ],
}

SECONDARY_BANDS: Dict[str, List[Tuple[float, str]]] = {
    "context": [
        (25, "Language authenticity concerns"),
        (20, "Cultural context mismatch"),
        (15, "Impossible claims detected"),
    ],
    "keyword": [
        (12, "Threat-related content"),
        (8, "Profanity or nonsensical content"),
    ],
    "behavioral": [
        (20, "Call frequency abuse detected"),
        (15, "Unusual timing patterns"),
        (10, "Content similarity concerns"),
    ],
    "transaction": [],
}

LOW_CONFIDENCE_THRESHOLD = 60


def component_indicators(component: str, score: float) -> List[str]:
    indicators = []
    for threshold, label in PRIMARY_BANDS[component]:
        if score >= threshold:
            indicators.append(label)
            break
    for threshold, label in SECONDARY_BANDS[component]:
        if score >= threshold:
            indicators.append(label)
    return indicators


def contributing_factors(components: Dict[str, float]) -> List[ContributingFactor]:
    factors = []
    total_max = sum(COMPONENT_BOUNDS.values())
    for field_name, max_score in COMPONENT_BOUNDS.items():
        component = field_name.replace("_score", "")
        score = components.get(field_name, 0.0)
        factors.append(ContributingFactor(
            component=component,
            score=score,
            max_score=max_score,
            weight_percent=round(max_score / total_max * 100, 1),
            confidence=round(score / max_score * 100, 1) if max_score else 0.0,
            indicators=component_indicators(component, score),
        ))
    return factors


def recommendations(components: Dict[str, float], composite: float, confidence: int) -> List[str]:
    recs = []

    if composite >= 70:
        recs.append("Block or flag this phone number for manual review")
        recs.append("Investigate related phone numbers from same source")
    elif composite >= 40:
        recs.append("Monitor this phone number for additional activity")
        recs.append("Consider additional verification steps")

    if components.get("context_score", 0) >= 20:
        recs.append("Review feedback content for impossible claims")
    if components.get("keyword_score", 0) >= 10:
        recs.append("Content contains problematic keywords - verify legitimacy")
    if components.get("behavioral_score", 0) >= 15:
        recs.append("Behavioral patterns suggest automated or abusive activity")

    if confidence < LOW_CONFIDENCE_THRESHOLD:
        recs.append("Low confidence score - consider manual review")

    return recs


def recommended_action(composite: float, confidence: int) -> str:
    """block / review / monitor / allow, stricter only when the evidence is strong."""
    confident = confidence >= LOW_CONFIDENCE_THRESHOLD
    if composite >= 85:
        return "block"
    if composite >= 70:
        return "block" if confident else "review"
    if composite >= 40:
        return "review" if confident else "monitor"
    return "allow"


def summarize(
    factors: List[ContributingFactor],
    composite: float,
    risk_level: str,
    confidence: int,
    degraded: List[str],
) -> str:
    drivers = sorted((f for f in factors if f.score > 0), key=lambda f: f.confidence, reverse=True)
    if drivers:
        summary = "Risk driven primarily by: " + ", ".join(
            f"{f.component} ({f.score:g}/{f.max_score:g})" for f in drivers[:2]
        ) + ". "
    else:
        summary = "No component contributed risk. "
    summary += f"Composite score {composite:.1f}/100 ({risk_level}), confidence {confidence}%."
    if degraded:
        summary += f" Degraded components: {', '.join(degraded)}."
    return summary

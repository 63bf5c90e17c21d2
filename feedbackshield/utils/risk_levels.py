"""
Risk level utilities.

Everything derived from the four component scores lives here so that the
create and correction paths share one implementation.
"""

from decimal import Decimal
from typing import Dict, Optional

from feedbackshield.config import settings
from feedbackshield.errors import ValidationError
from feedbackshield.models.fraud_score import COMPONENT_BOUNDS, RiskLevel

# Inclusive lower bounds, highest first
RISK_THRESHOLDS = (
    (85.0, RiskLevel.CRITICAL),
    (70.0, RiskLevel.HIGH),
    (40.0, RiskLevel.MEDIUM),
)


def derive_risk_level(composite_score: float) -> str:
    """
    Map a composite score (0-100) to a risk level.

    critical >= 85, high >= 70, medium >= 40, else low.
    """
    for threshold, level in RISK_THRESHOLDS:
        if composite_score >= threshold:
            return level.value
    return RiskLevel.LOW.value


def is_fraudulent(composite_score: float, threshold: Optional[float] = None) -> bool:
    threshold = threshold if threshold is not None else settings.fraud_threshold
    return composite_score >= threshold


def fraud_probability(composite_score: float) -> float:
    return min(composite_score / 100.0, 1.0)


def calculate_confidence(components: Dict[str, float], composite_score: float) -> int:
    """
    Evidence-based confidence (0-100).

    Half comes from how many of the four components contributed at all,
    half from the size of the composite.
    """
    contributing = sum(1 for value in components.values() if value > 0)
    coverage = (contributing / len(COMPONENT_BOUNDS)) * 50
    magnitude = (composite_score / 100.0) * 50
    return min(100, int(round(coverage + magnitude)))


def validate_components(components: Dict[str, float]) -> Dict[str, float]:
    """Reject (never clamp) any component outside its bound."""
    validated = {}
    for name, upper in COMPONENT_BOUNDS.items():
        if name not in components:
            raise ValidationError(f"{name} is required", field=name)
        value = components[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number", field=name)
        value = float(value)
        if value != value or value < 0 or value > upper:
            raise ValidationError(f"{name}={value} outside [0, {upper:g}]", field=name)
        validated[name] = value
    return validated


def derive_score_fields(components: Dict[str, float]) -> Dict[str, object]:
    """
    Validate the components and compute every derived FraudScore field.

    Returns a dict ready to be assigned onto a FraudScore row.
    """
    validated = validate_components(components)
    # Decimal sum of the written values; float drift must not cross a threshold
    composite = float(sum(Decimal(str(value)) for value in validated.values()))
    return {
        **validated,
        "composite_score": composite,
        "risk_level": derive_risk_level(composite),
        "fraud_probability": fraud_probability(composite),
        "confidence_level": calculate_confidence(validated, composite),
    }

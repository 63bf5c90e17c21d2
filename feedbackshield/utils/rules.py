"""
Detection rule expressions.

A rule is a small expression tree: `Condition` leaves compare one named
feature against a constant, and `AllOf` / `AnyOf` / `Not` combine them.
Detectors compute a flat feature dict and evaluate their rules against it;
the ids of the rules that fire are stored with the detected pattern.

    DetectionRule(
        "frequency.window_exceeded",
        "More calls in one window than allowed",
        Condition("max_calls_in_window", ">", 5),
    )
"""

import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple, Union

from feedbackshield.errors import ValidationError

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    "in": lambda value, allowed: value in allowed,
}


@dataclass(frozen=True)
class Condition:
    feature: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValidationError(f"Unknown rule operator '{self.op}'", field="op")


@dataclass(frozen=True)
class AllOf:
    children: Tuple["Expr", ...]

    def __init__(self, *children: "Expr"):
        object.__setattr__(self, "children", tuple(children))


@dataclass(frozen=True)
class AnyOf:
    children: Tuple["Expr", ...]

    def __init__(self, *children: "Expr"):
        object.__setattr__(self, "children", tuple(children))


@dataclass(frozen=True)
class Not:
    child: "Expr"


Expr = Union[Condition, AllOf, AnyOf, Not]


@dataclass(frozen=True)
class DetectionRule:
    rule_id: str
    description: str
    when: Expr


def evaluate(expr: Expr, features: Dict[str, Any]) -> bool:
    """
    Evaluate an expression against computed features.

    A condition on a feature that is missing (or None) is False.
    """
    if isinstance(expr, Condition):
        actual = features.get(expr.feature)
        if actual is None:
            return False
        return bool(OPERATORS[expr.op](actual, expr.value))
    if isinstance(expr, AllOf):
        return all(evaluate(child, features) for child in expr.children)
    if isinstance(expr, AnyOf):
        return any(evaluate(child, features) for child in expr.children)
    if isinstance(expr, Not):
        return not evaluate(expr.child, features)
    raise TypeError(f"Not a rule expression: {expr!r}")


def fired_rules(rules: List[DetectionRule], features: Dict[str, Any]) -> List[str]:
    return [rule.rule_id for rule in rules if evaluate(rule.when, features)]

"""
Transaction verification: maps an externally computed purchase match
outcome onto the 0-10 transaction component.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from feedbackshield.config import settings
from feedbackshield.errors import UpstreamUnavailable
from feedbackshield.models.fraud_score import MAX_TRANSACTION_SCORE
from feedbackshield.schemas.fraud_schemas import ClaimedTransaction
from feedbackshield.utils.logging_config import StructuredLogger, metrics
from feedbackshield.utils.retry import call_with_retry

logger = StructuredLogger(__name__)


class MatchOutcome(str, enum.Enum):
    FULL_MATCH = "full_match"
    PARTIAL_MATCH = "partial_match"
    NO_MATCH = "no_match"
    UNAVAILABLE = "unavailable"


class TransactionMatchProvider(Protocol):
    def match(self, identity_hash: str, claimed_amount: float, claimed_time: datetime) -> MatchOutcome:
        ...


@dataclass
class TransactionResult:
    outcome: MatchOutcome
    score: float
    degraded: bool
    attempts: int = 0
    error: Optional[str] = None


def outcome_score(outcome: MatchOutcome, unavailable_score: Optional[float] = None) -> float:
    if outcome is MatchOutcome.FULL_MATCH:
        return 0.0
    if outcome is MatchOutcome.PARTIAL_MATCH:
        return 5.0
    if outcome is MatchOutcome.NO_MATCH:
        return MAX_TRANSACTION_SCORE
    # Unknown is not the same as verified
    return unavailable_score if unavailable_score is not None else settings.transaction_unavailable_score


class TransactionVerifier:
    def __init__(
        self,
        provider: Optional[TransactionMatchProvider] = None,
        max_retries: Optional[int] = None,
        unavailable_score: Optional[float] = None,
        retry_base_delay: float = 0.2,
    ):
        self.provider = provider
        self.max_retries = max_retries if max_retries is not None else settings.transaction_max_retries
        self.unavailable_score = (
            unavailable_score if unavailable_score is not None else settings.transaction_unavailable_score
        )
        self.retry_base_delay = retry_base_delay

    def _result(self, outcome: MatchOutcome, attempts: int = 0, error: Optional[str] = None) -> TransactionResult:
        return TransactionResult(
            outcome=outcome,
            score=outcome_score(outcome, self.unavailable_score),
            degraded=outcome is MatchOutcome.UNAVAILABLE,
            attempts=attempts,
            error=error,
        )

    def verify(self, identity_hash: str, claim: Optional[ClaimedTransaction]) -> TransactionResult:
        if self.provider is None or claim is None:
            return self._result(MatchOutcome.UNAVAILABLE)

        try:
            outcome, attempts = call_with_retry(
                lambda: self.provider.match(identity_hash, claim.amount, claim.timestamp),
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                label="transaction match",
            )
        except UpstreamUnavailable as e:
            metrics.increment("transaction.degraded")
            logger.warning("Transaction provider unavailable", error=str(e), transient=e.transient)
            attempts = self.max_retries + 1 if e.transient else 1
            return self._result(MatchOutcome.UNAVAILABLE, attempts=attempts, error=str(e))

        return self._result(MatchOutcome(outcome), attempts=attempts)

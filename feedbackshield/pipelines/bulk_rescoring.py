"""
Bulk re-scoring: fans identities out over a bounded worker pool.

Each worker scores one identity end to end. Setting the cancel event stops
workers from picking up further identities; identities already running
finish and commit normally, the rest are reported as skipped.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from feedbackshield.config import settings
from feedbackshield.errors import FraudEngineError
from feedbackshield.pipelines.fraud_pipeline import FraudEngine
from feedbackshield.schemas.fraud_schemas import FraudScoreRequest, FraudScoreResponse
from feedbackshield.utils.logging_config import StructuredLogger, metrics

logger = StructuredLogger(__name__)

_SKIPPED = object()


@dataclass
class BulkResult:
    completed: Dict[str, FraudScoreResponse] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.skipped)


class BulkRescoringJob:
    def __init__(self, engine: FraudEngine, max_workers: Optional[int] = None):
        self.engine = engine
        self.max_workers = max(1, max_workers if max_workers is not None else settings.bulk_max_workers)
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def _score_one(self, request: FraudScoreRequest):
        if self.cancel_event.is_set():
            return _SKIPPED
        return self.engine.compute_score(request)

    def run(self, requests: List[FraudScoreRequest]) -> BulkResult:
        result = BulkResult()
        start = time.time()
        metrics.gauge("bulk.active_workers", self.max_workers)
        logger.info("Bulk rescoring started", identities=len(requests), workers=self.max_workers)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="rescore") as pool:
            futures = {pool.submit(self._score_one, req): req.identity_hash for req in requests}
            for future in as_completed(futures):
                identity = futures[future]
                try:
                    outcome = future.result()
                except FraudEngineError as e:
                    # Per-identity failure; the batch carries on
                    result.failed[identity] = f"{type(e).__name__}: {e}"
                    metrics.increment("bulk.failed")
                    logger.warning("Rescoring failed", identity=identity[:12], error=str(e))
                    continue
                except Exception as e:
                    # Any other error is still confined to its identity
                    result.failed[identity] = f"{type(e).__name__}: {e}"
                    metrics.increment("bulk.failed")
                    logger.error("Rescoring crashed", exc_info=True, identity=identity[:12], error=str(e))
                    continue
                if outcome is _SKIPPED:
                    result.skipped.append(identity)
                    metrics.increment("bulk.skipped")
                else:
                    result.completed[identity] = outcome
                    metrics.increment("bulk.completed")

        metrics.gauge("bulk.active_workers", 0)
        result.cancelled = self.cancel_event.is_set()
        result.duration_seconds = round(time.time() - start, 3)
        logger.info(
            "Bulk rescoring finished",
            completed=len(result.completed),
            failed=len(result.failed),
            skipped=len(result.skipped),
            cancelled=result.cancelled,
        )
        return result

    def rescore_identities(self, identity_hashes: List[str]) -> BulkResult:
        """Rescore from each identity's latest stored feedback."""
        requests = []
        missing = []
        for identity in identity_hashes:
            request = self.engine.rescore_request(identity)
            if request is None:
                missing.append(identity)
            else:
                requests.append(request)
        result = self.run(requests)
        for identity in missing:
            result.failed[identity] = "no stored feedback to rescore"
        return result

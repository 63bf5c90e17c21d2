import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from openai import (
    APIConnectionError,
    APIStatusError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)

from feedbackshield.config import settings
from feedbackshield.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

PROVIDER_NAME = "openai"

# HTTP status codes worth retrying on
RETRYABLE_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


@dataclass
class LegitimacyJudgement:
    """Structured output of one external legitimacy analysis."""
    facets: Dict[str, Any]
    raw: Dict[str, Any]
    latency_ms: float


class LegitimacyProvider(Protocol):
    def analyze(self, text: str, business_context: Dict[str, Any]) -> LegitimacyJudgement:
        ...


SYSTEM_PROMPT = (
    "You review customer feedback given by phone to a store, and judge whether "
    "it plausibly describes a real visit. Return ONLY valid JSON (no markdown). Schema:\n"
    "{\n"
    '  "language": ISO 639-1 code of the feedback,\n'
    '  "plausibility": float (0-1, 1 = fully plausible real experience),\n'
    '  "impossible_claims": [string, ...] (claims that cannot be true for this business),\n'
    '  "cultural_mismatch": bool (language, idiom or references do not fit the business location),\n'
    '  "sentiment_claim_coherent": bool (stated sentiment matches the described events),\n'
    '  "suspicious_patterns": [string, ...],\n'
    '  "confidence": float (0-1, how confident you are in this assessment),\n'
    '  "reasoning": string\n'
    "}\n"
    "Use the business context to check claims about products, staff, opening hours "
    "and location. Set confidence lower if the feedback is short or ambiguous."
)


def normalize_facets(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a provider payload into typed facets with safe defaults."""
    def _unit(value, default):
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return default

    claims = payload.get("impossible_claims") or []
    if isinstance(claims, str):
        claims = [claims]
    patterns = payload.get("suspicious_patterns") or []
    if isinstance(patterns, str):
        patterns = [patterns]

    return {
        "language": str(payload.get("language") or "").lower()[:5] or None,
        "plausibility": _unit(payload.get("plausibility"), 0.5),
        "impossible_claims": [str(c) for c in claims],
        "cultural_mismatch": bool(payload.get("cultural_mismatch", False)),
        "sentiment_claim_coherent": bool(payload.get("sentiment_claim_coherent", True)),
        "suspicious_patterns": [str(p) for p in patterns],
        "confidence": _unit(payload.get("confidence"), 0.0),
        "reasoning": str(payload.get("reasoning") or ""),
    }


class OpenAILegitimacyProvider:
    """
    Legitimacy judgement via the OpenAI chat API in JSON mode.

    The SDK's own retries are disabled; the context analyzer owns retry and
    timeout policy.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=timeout if timeout is not None else settings.context_timeout_seconds,
            max_retries=0,
        )
        self.model = model or settings.openai_model

    def analyze(self, text: str, business_context: Dict[str, Any]) -> LegitimacyJudgement:
        start = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                max_tokens=settings.openai_max_tokens,
                temperature=0.0,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f"Business context:\n{json.dumps(business_context, ensure_ascii=False)}\n\n"
                            f"Feedback:\n{text}"
                        ),
                    },
                ],
            )
            content = response.choices[0].message.content
            payload = json.loads(content)
        except (RateLimitError, APIConnectionError) as e:
            # APITimeoutError is an APIConnectionError
            raise UpstreamUnavailable(f"{type(e).__name__}: {e}", provider=PROVIDER_NAME, transient=True) from e
        except APIStatusError as e:
            raise UpstreamUnavailable(
                f"OpenAI returned {e.status_code}",
                provider=PROVIDER_NAME,
                transient=e.status_code in RETRYABLE_STATUS_CODES,
            ) from e
        except OpenAIError as e:
            raise UpstreamUnavailable(str(e), provider=PROVIDER_NAME, transient=False) from e
        except (json.JSONDecodeError, TypeError, IndexError) as e:
            raise UpstreamUnavailable(
                f"Unparseable legitimacy judgement: {e}", provider=PROVIDER_NAME, transient=False
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamUnavailable("Legitimacy judgement is not an object", provider=PROVIDER_NAME, transient=False)

        latency_ms = round((time.monotonic() - start) * 1000, 1)
        logger.debug(f"Legitimacy judgement received in {latency_ms}ms")
        return LegitimacyJudgement(facets=normalize_facets(payload), raw=payload, latency_ms=latency_ms)

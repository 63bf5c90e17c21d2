import hashlib
import hmac
import re
from typing import Dict, Optional

from feedbackshield.config import settings
from feedbackshield.errors import ValidationError

_IDENTITY_HASH_RE = re.compile(r"^[A-Za-z0-9_-]{8,128}$")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def normalize_text(text: str) -> str:
    text = text or ""
    text = text.strip()
    text = re.sub(r"\s+", " ", text)
    return text


def tokenize(text: str) -> list:
    """Lower-cased word tokens, unicode aware (å, ä, ö survive)."""
    return _WORD_RE.findall((text or "").lower())


def text_statistics(text: str) -> Dict[str, int]:
    text = normalize_text(text)
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]
    return {
        "text_length": len(text),
        "word_count": len(tokenize(text)),
        "sentence_count": len(sentences),
    }


def validate_identity_hash(identity_hash: str) -> str:
    if not isinstance(identity_hash, str) or not _IDENTITY_HASH_RE.match(identity_hash):
        raise ValidationError(
            "identity_hash must be 8-128 characters of [A-Za-z0-9_-]",
            field="identity_hash",
        )
    return identity_hash


def hash_identity(phone_number: str, salt: Optional[str] = None) -> str:
    """
    One-way identity hash for a phone number.

    Digits only, so "+46 70-123 45 67" and "+46701234567" map to the same
    identity. With a salt this is an HMAC, without it a plain SHA-256. The
    salt defaults to the configured `identity_hash_salt`.
    """
    salt = salt if salt is not None else settings.identity_hash_salt
    digits = re.sub(r"\D", "", phone_number or "")
    if not digits:
        raise ValidationError("phone number contains no digits", field="phone_number")
    if salt:
        return hmac.new(salt.encode(), digits.encode(), hashlib.sha256).hexdigest()
    return hashlib.sha256(digits.encode()).hexdigest()

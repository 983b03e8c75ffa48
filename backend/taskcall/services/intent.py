"""Keyword-driven intent detection for caller utterances.

Everything here is pure and deterministic: the same normalized utterance
always yields the same label and confidence. Keyword sets live in the
``INTENT_KEYWORDS`` / ``BUSY_KEYWORDS`` tables so new phrasings are data
additions rather than logic changes.
"""

from __future__ import annotations

import re
from typing import Dict, Tuple

from taskcall.core.config import settings
from taskcall.models.schemas import IntentResult


# Transliterated / English tokens callers mix into Gujarati speech.
MIXED_LANGUAGE_DICTIONARY: Dict[str, str] = {
    "aadhar": "આધાર",
    "aadhaar": "આધાર",
    "card": "કાર્ડ",
    "data": "ડેટા",
    "entry": "એન્ટ્રી",
    "update": "સુધારો",
    "correction": "સુધારો",
    "name": "નામ",
    "address": "સરનામું",
    "mobile": "મોબાઇલ",
    "number": "નંબર",
    "change": "ફેરફાર",
}

FILLER_WORDS: Tuple[str, ...] = ("umm", "uh", "hmm", "ok", "okay")

INTENT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "PENDING": ("નથી", "બાકી", "હજુ", "પૂર્ણ નથી", "ચાલુ છે", "pending"),
    "DONE": ("પૂર્ણ થયું", "થઈ ગયું", "થયું છે", "મળી ગયું", "done"),
}

BUSY_KEYWORDS: Tuple[str, ...] = (
    "સમય",
    "નથી",
    "પછી",
    "બાદમાં",
    "હવે નહીં",
    "હવે નથી",
    "પછી વાત",
    "later",
    "busy",
    "not now",
)

# (pending matched, done matched) -> (label, confidence)
DECISION_TABLE: Dict[Tuple[bool, bool], Tuple[str, int]] = {
    (True, False): ("PENDING", 90),
    (False, True): ("DONE", 90),
    (True, True): ("UNCLEAR", 40),
    (False, False): ("UNCLEAR", 30),
}

_DICTIONARY_PATTERNS = [
    (re.compile(rf"\b{re.escape(token)}\b", re.IGNORECASE), replacement)
    for token, replacement in MIXED_LANGUAGE_DICTIONARY.items()
]
_FILLER_RE = re.compile(r"\b(?:" + "|".join(FILLER_WORDS) + r")\b", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_utterance(text: str | None) -> str:
    """Case-fold, map mixed-language tokens to Gujarati, drop fillers."""
    if not text:
        return ""
    out = text.casefold()
    for pattern, replacement in _DICTIONARY_PATTERNS:
        out = pattern.sub(replacement, out)
    out = _FILLER_RE.sub("", out)
    return _WHITESPACE_RE.sub(" ", out).strip()


def normalize_phone(phone: str | None, country_code: str | None = None) -> str:
    """Digits only, leading country code removed."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", str(phone))
    prefix = settings.PHONE_COUNTRY_CODE if country_code is None else country_code
    # Only strip when a full national number remains after the prefix.
    if prefix and digits.startswith(prefix) and len(digits) - len(prefix) >= 10:
        digits = digits[len(prefix):]
    return digits


def _matches_any(text: str, keywords: Tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify(utterance: str) -> IntentResult:
    text = utterance or ""
    pending = _matches_any(text, INTENT_KEYWORDS["PENDING"])
    done = _matches_any(text, INTENT_KEYWORDS["DONE"])
    label, confidence = DECISION_TABLE[(pending, done)]
    return IntentResult(label=label, confidence=confidence)


def busy_signal_count(utterance: str) -> int:
    text = utterance or ""
    return sum(1 for keyword in BUSY_KEYWORDS if keyword in text)


def is_busy_intent(utterance: str, *, min_signals: int | None = None) -> bool:
    """At least ``min_signals`` independent busy keywords must be present."""
    threshold = settings.BUSY_MIN_SIGNALS if min_signals is None else min_signals
    return busy_signal_count(utterance) >= max(1, threshold)


def is_degenerate(utterance: str, *, min_chars: int | None = None) -> bool:
    threshold = settings.MIN_UTTERANCE_CHARS if min_chars is None else min_chars
    return len((utterance or "").strip()) < threshold

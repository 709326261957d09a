"""
Small text helpers shared by the order and the delivery sinks.
"""

from __future__ import annotations

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

# Caller-ID values Twilio (and some carriers) use when the number is withheld.
_BLOCKED_MARKERS = ("anonymous", "blocked", "restricted", "private", "undefined", "null")


def format_phone_number(phone: Optional[str]) -> str:
    """
    Format a phone number as `(123) 456-7890`.

    - Missing values become "Unknown".
    - Withheld caller IDs become "Blocked".
    - Anything that is not a 10-digit (or 1 + 10-digit) NANP number is returned unchanged.
    """
    if phone is None:
        return "Unknown"

    raw = str(phone)
    lowered = raw.strip().lower()
    if not lowered:
        return "Unknown"
    if any(marker in lowered for marker in _BLOCKED_MARKERS):
        return "Blocked"

    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return raw

    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def capitalize_words(text: Optional[str]) -> str:
    """Capitalize each space-separated word ("jane SMITH" -> "Jane Smith")."""
    if not text:
        return ""
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split(" "))

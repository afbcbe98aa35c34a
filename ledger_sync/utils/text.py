"""
Title normalization and human reference generation.
"""

import re
import secrets
import unicodedata
from typing import Callable, Container, Optional

# ZWSP, ZWNJ, ZWJ, word joiner, BOM, soft hyphen
_INVISIBLE_CHARS = {"\u200b", "\u200c", "\u200d", "\u2060", "\ufeff", "\u00ad"}
_URL_RE = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[\W_]+")

HUMAN_REF_PREFIX = "TK-"
HUMAN_REF_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
HUMAN_REF_LENGTH = 6


def _is_variation_selector(ch: str) -> bool:
    code = ord(ch)
    return 0xFE00 <= code <= 0xFE0F or 0xE0100 <= code <= 0xE01EF


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a task title for identity matching.

    Case-folds, strips diacritics and width variants, removes zero-width and
    format characters, drops URLs, collapses every non-alphanumeric run to a
    single space and trims. Used by both the title net in the identity
    resolver and the ``normalizedTitle`` field written to the ledger, so the
    two always agree.

    Args:
        title: Raw title text

    Returns:
        Normalized key (empty string when nothing meaningful remains)
    """
    if not title:
        return ""

    # NFKD folds full-width forms and splits accents off their base letter
    text = unicodedata.normalize("NFKD", title)
    text = "".join(
        ch for ch in text
        if ch not in _INVISIBLE_CHARS
        and not _is_variation_selector(ch)
        and not unicodedata.combining(ch)
        and unicodedata.category(ch) != "Cf"
    )
    text = text.casefold()
    text = _URL_RE.sub(" ", text)
    text = _NON_ALNUM_RE.sub(" ", text)
    return text.strip()


def generate_human_ref(
    existing: Optional[Container[str]] = None,
    choice: Callable[[str], str] = secrets.choice,
    max_attempts: int = 20,
) -> str:
    """
    Generate a short user-facing task reference such as ``TK-7QF3KM``.

    The alphabet excludes visually ambiguous characters (0/O, 1/I/L). When
    ``existing`` is given, references already present (compared upper-case)
    are avoided.
    """
    ref = ""
    for _ in range(max_attempts):
        ref = HUMAN_REF_PREFIX + "".join(
            choice(HUMAN_REF_ALPHABET) for _ in range(HUMAN_REF_LENGTH)
        )
        if existing is None or ref.upper() not in existing:
            return ref
    return ref

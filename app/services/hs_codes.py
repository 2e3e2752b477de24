"""
HS Code Normalization

Pure helpers for Harmonized System codes as they appear in the Moroccan
nomenclature (chapter=2, heading=4, subheading=6, national line=8/10 digits).

A code is never persisted as an object: the normalized digit string is the
storage key, the dotted form is for display only.

Usage:
    from app.services.hs_codes import normalize, format_code, level, ancestors

    normalize("8471.30.00.10")   # "8471300010"
    format_code("847130")        # "8471.30"
    level("847130")              # "subheading"
    ancestors("8471300010")      # ["84", "8471", "847130", "84713000"]
"""

import re
from typing import Dict, List, Optional

_SEPARATORS = re.compile(r"[.\s\-–—]")
_NON_DIGITS = re.compile(r"\D")

CHAPTER = "chapter"
HEADING = "heading"
SUBHEADING = "subheading"
LINE = "line"

ANCESTOR_LENGTHS = (2, 4, 6, 8)


def normalize(code: Optional[str]) -> str:
    """
    Strip separators from a code.

    Best-effort: anything that is not a separator is kept as-is, and
    malformed input is passed through instead of raising.
    """
    if not code:
        return ""
    return _SEPARATORS.sub("", str(code))


def format_code(digits: str) -> str:
    """Render a normalized code with dots (8471300010 → 8471.30.00.10)."""
    clean = normalize(digits)
    n = len(clean)
    if n <= 2:
        return clean
    if n <= 4:
        return f"{clean[:2]}.{clean[2:]}"
    if n <= 6:
        return f"{clean[:4]}.{clean[4:]}"
    if n <= 8:
        return f"{clean[:4]}.{clean[4:6]}.{clean[6:]}"
    return f"{clean[:4]}.{clean[4:6]}.{clean[6:8]}.{clean[8:]}"


def level(digits: str) -> str:
    """Hierarchy level from the normalized length."""
    n = len(normalize(digits))
    if n <= 2:
        return CHAPTER
    if n <= 4:
        return HEADING
    if n <= 6:
        return SUBHEADING
    return LINE


def ancestors(digits: str) -> List[str]:
    """Proper prefixes at lengths 2, 4, 6, 8, root first."""
    clean = normalize(digits)
    return [clean[:n] for n in ANCESTOR_LENGTHS if n < len(clean)]


def chapter(digits: str) -> int:
    """Chapter number, 0 when the first two characters are not digits."""
    head = normalize(digits)[:2]
    return int(head) if head.isdigit() else 0


def escape_search_term(term: str) -> str:
    """Escape LIKE wildcards so user text is matched literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _strict(code: Optional[str], width: int) -> Optional[str]:
    digits = _NON_DIGITS.sub("", code or "")
    if len(digits) < 2:
        return None
    if not 1 <= int(digits[:2]) <= 99:
        return None
    return digits[:width].ljust(width, "0")


def normalize_strict_10(code: Optional[str]) -> Optional[str]:
    """
    Digits only, padded/truncated to 10.

    Returns None when the chapter is outside 01-99.
    """
    return _strict(code, 10)


def normalize_strict_6(code: Optional[str]) -> Optional[str]:
    """Digits only, padded/truncated to 6; None when the chapter is invalid."""
    return _strict(code, 6)


def extract_hs6(code: Optional[str]) -> Optional[str]:
    digits = _NON_DIGITS.sub("", code or "")
    if len(digits) < 6:
        return None
    return digits[:6]


def parse_detected_code(raw: str) -> Optional[Dict]:
    """
    Break a detected code into its useful forms.

    Returns:
        {"raw", "clean", "hs6", "chapter"} or None when fewer than 4 digits
    """
    clean = _NON_DIGITS.sub("", raw or "")
    if len(clean) < 4:
        return None
    return {
        "raw": raw,
        "clean": clean,
        "hs6": clean[:6] if len(clean) >= 6 else None,
        "chapter": int(clean[:2]),
    }

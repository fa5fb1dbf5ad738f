"""
Text utilities for normalization, validation, and sanitization.

Handles Unicode normalization, title matching, identifier validation and
the stable query fingerprints used in raw response cache keys.
"""

import hashlib
import html
import json
import re
import unicodedata
from typing import Any, Optional


# =============================================================================
# Unicode Normalization
# =============================================================================

def normalize_unicode(text: str) -> str:
    """
    Normalize Unicode text for comparison.

    - NFKC normalization (compatibility decomposition + canonical composition)
    - Normalizes different dash types to simple hyphen
    - Normalizes various quote styles

    Args:
        text: Input text to normalize

    Returns:
        Normalized text
    """
    if not text:
        return ""

    text = unicodedata.normalize('NFKC', text)

    dashes = '‐‑‒–—―−﹘﹣－'
    for dash in dashes:
        text = text.replace(dash, '-')

    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")
    text = text.replace('«', '"').replace('»', '"')

    return text


def normalize_for_comparison(text: str) -> str:
    """
    Normalize text for fuzzy comparison.

    - Lowercase
    - Remove accents (café -> cafe)
    - Remove punctuation
    - Collapse whitespace
    """
    if not text:
        return ""

    text = normalize_unicode(text).lower()

    # NFD decomposes, then we strip combining marks
    text = unicodedata.normalize('NFD', text)
    text = ''.join(c for c in text if unicodedata.category(c) != 'Mn')

    text = re.sub(r'[^\w\s]', '', text)
    return ' '.join(text.split())


def titles_match(title1: str, title2: str) -> bool:
    """Check if two titles match after normalization."""
    return normalize_for_comparison(title1) == normalize_for_comparison(title2)


# =============================================================================
# Sanitization
# =============================================================================

def sanitize_text(text: str) -> str:
    """
    Sanitize provider text (plots, taglines) for safe display.

    - Decode HTML entities
    - Strip HTML tags
    - Remove control characters
    - Normalize whitespace (paragraph breaks are kept)

    Args:
        text: Raw provider text

    Returns:
        Sanitized text, empty string for empty input
    """
    if not text:
        return ""

    text = html.unescape(text)
    text = re.sub(r'<[^>]+>', '', text)

    # Control characters, except newlines and tabs
    text = ''.join(
        c for c in text
        if c in '\n\t' or unicodedata.category(c)[0] != 'C'
    )

    lines = [' '.join(line.split()) for line in text.split('\n')]
    return '\n'.join(line for line in lines if line).strip()


# =============================================================================
# Validation & Extraction
# =============================================================================

def validate_imdb_id(imdb_id: str) -> bool:
    """
    Validate IMDB title ID format.

    Args:
        imdb_id: IMDB ID to validate (e.g., "tt0120338")

    Returns:
        True if valid IMDB title ID format
    """
    if not imdb_id or not isinstance(imdb_id, str):
        return False
    return bool(re.match(r'^tt\d{7,10}$', imdb_id.strip().lower()))


def extract_year_from_text(text: str) -> Optional[int]:
    """
    Extract release year from text (dates, "1997–", "Titanic (1997)").

    Args:
        text: Text that may contain a year

    Returns:
        Extracted year or None
    """
    if not text:
        return None

    match = re.search(r'\((\d{4})\)', text)
    if match:
        year = int(match.group(1))
        if 1888 <= year <= 2100:  # First film was 1888
            return year

    match = re.search(r'(?<!\d)(18[89]\d|19\d{2}|20\d{2})(?!\d)', text)
    if match:
        return int(match.group(1))

    return None


# =============================================================================
# Cache Keys
# =============================================================================

def query_fingerprint(**query: Any) -> str:
    """
    Stable short hash of a query, used in raw response cache keys.

    None values are dropped and titles are case-folded and stripped so
    "Titanic" and " titanic" share one cache entry.

    Args:
        **query: Query dimensions (title, year, imdb_id, mode, ...)

    Returns:
        16 hex character SHA-256 prefix
    """
    cleaned = {}
    for key, value in query.items():
        if value is None:
            continue
        if key == "title" and isinstance(value, str):
            value = value.strip().lower()
        cleaned[key] = value

    payload = json.dumps(cleaned, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()[:16]

"""
String normalization utilities for record matching.

Provides consistent string normalization for generating the name keys
used when linking CRM records to local rows that have no external id yet.
"""

from __future__ import annotations

import re
import unicodedata


def normalize_string(value: str) -> str:
    """
    Normalize a string into lowercase ASCII words.

    Accents and punctuation are removed and whitespace is collapsed, so
    "José  O'Brien" becomes "jose obrien".
    """
    if not value:
        return ""

    # Decompose accents, then drop the combining marks
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))

    normalized = re.sub(r"[^a-z0-9\s]", "", normalized.lower())
    return re.sub(r"\s+", " ", normalized).strip()


def name_key(*parts: str | None) -> str:
    """
    Build an order-insensitive name key from name fragments.

    Empty fragments are ignored, so name_key("John", None, "Smith") equals
    name_key("Smith John").
    """
    joined = " ".join(str(p) for p in parts if p)
    # "Smith, John" and "John Smith" produce the same key
    return "".join(sorted(normalize_string(joined).split()))

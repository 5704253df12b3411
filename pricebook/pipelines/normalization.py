"""Text normalization for supplier names, product names and message bodies.

Messages arrive in mixed Portuguese/English with accents, smart quotes and
irregular spacing; identity comparison must ignore case and whitespace but
keep diacritics.
"""
from __future__ import annotations

import re
import unicodedata


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize common punctuation variations."""
    # Replace smart quotes
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")

    # Normalize dashes
    text = text.replace('–', '-').replace('—', '-')

    return text


def normalize_unicode(text: str) -> str:
    """Compose accents (NFC) so 'açúcar' typed two ways compares equal."""
    return unicodedata.normalize('NFC', text)


def display_name(raw_name: str) -> str:
    """Name as stored: original casing, tidy spacing."""
    return normalize_whitespace(normalize_unicode(raw_name))


def normalize_name(raw_name: str) -> str:
    """Identity key for products and suppliers.

    Trim, collapse internal whitespace and case-fold; no fuzzy matching.

    >>> normalize_name("  Caneta   Azul BIC ")
    'caneta azul bic'
    """
    return display_name(raw_name).casefold()


def clean_message_text(text: str) -> str:
    """Prepare a raw message body for extraction.

    Line breaks are kept (suppliers list one offer per line); runs of spaces
    inside a line are collapsed.
    """
    if not text or not text.strip():
        return ""

    text = normalize_unicode(text)
    text = normalize_punctuation(text)
    lines = [normalize_whitespace(line) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)

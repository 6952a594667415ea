"""
Text helpers shared by the catalog index, the classifier and the replies.

Two different normalizations exist on purpose:

* ``normalize_search`` - what the index compares: lowercase, no diacritics,
  underscores as spaces, single spaces.
* ``slugify_segment`` - what identifiers are made of: lowercase, no
  diacritics, whitespace collapsed to a single underscore.
"""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_UNDERSCORES_RE = re.compile(r"_{2,}")
_EDGE_PUNCTUATION = " \t\n¡!¿?.,;:"

PRODUCT_ID_SEPARATOR = "::"


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_search(text: str | None) -> str:
    if not text:
        return ""
    cleaned = strip_diacritics(text.lower()).replace("_", " ")
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def normalize_message(text: str | None) -> str:
    """Normalization used for intent matching: also drops outer punctuation."""

    return normalize_search(text).strip(_EDGE_PUNCTUATION)


def slugify_segment(text: str | None) -> str:
    if not text:
        return ""
    cleaned = strip_diacritics(text.lower().strip())
    cleaned = _WHITESPACE_RE.sub("_", cleaned)
    cleaned = _UNDERSCORES_RE.sub("_", cleaned)
    return cleaned.strip("_")


def make_product_id(category: str, subcategory: str, name: str) -> str:
    return PRODUCT_ID_SEPARATOR.join(
        slugify_segment(segment) for segment in (category, subcategory, name)
    )


def display_name(text: str) -> str:
    """``cuaderno_a4`` -> ``Cuaderno A4``."""

    words = _WHITESPACE_RE.split(text.replace("_", " ").strip())
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def word_count(text: str) -> int:
    return len([token for token in _WHITESPACE_RE.split(text.strip()) if token])

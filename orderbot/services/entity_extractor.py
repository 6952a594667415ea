from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .text_normalizer import normalize_search

SPELLED_NUMBERS = {
    "un": 1,
    "una": 1,
    "uno": 1,
    "dos": 2,
    "tres": 3,
    "cuatro": 4,
    "cinco": 5,
    "seis": 6,
    "siete": 7,
    "ocho": 8,
    "nueve": 9,
    "diez": 10,
}

QUANTITY_PATTERN = re.compile(
    r"\b(\d+|" + "|".join(sorted(SPELLED_NUMBERS, key=len, reverse=True)) + r")\b"
)
INDEX_PATTERN = re.compile(r"\b(\d+)\b")
DEFAULT_QUANTITY = 1


@dataclass(frozen=True)
class ExtractedEntities:
    quantity: int
    raw_text: str
    quantity_given: bool = False


def _last_quantity(text: str | None) -> Optional[int]:
    """Return the last quantity mentioned in the text, None when there is none."""

    matches = QUANTITY_PATTERN.findall(normalize_search(text))
    if not matches:
        return None
    token = matches[-1]
    value = SPELLED_NUMBERS.get(token)
    if value is None:
        value = int(token)
    return value if value > 0 else DEFAULT_QUANTITY


def extract_entities(text: str | None) -> ExtractedEntities:
    quantity = _last_quantity(text)
    return ExtractedEntities(
        quantity=DEFAULT_QUANTITY if quantity is None else quantity,
        raw_text=text or "",
        quantity_given=quantity is not None,
    )


def extract_index(text: str | None) -> Optional[int]:
    """First integer in the text; used for "quitar 2" style commands."""

    match = INDEX_PATTERN.search(text or "")
    return int(match.group(1)) if match else None

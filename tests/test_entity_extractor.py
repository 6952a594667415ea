from __future__ import annotations

import pytest

from orderbot.services.entity_extractor import extract_entities, extract_index


@pytest.mark.parametrize(
    "text,expected,given",
    [
        ("quiero 2 cuadernos", 2, True),
        ("Dame TRES lapiceras", 3, True),
        ("una goma por favor", 1, True),
        ("cuaderno a4", 1, False),
        ("0 lapiceras", 1, True),
        ("", 1, False),
        (None, 1, False),
    ],
)
def test_extract_quantity(text, expected, given):
    entities = extract_entities(text)

    assert entities.quantity == expected
    assert entities.quantity_given is given


def test_last_quantity_wins():
    assert extract_entities("quiero 2 cuadernos y 5 lapiceras").quantity == 5
    assert extract_entities("10 fotocopias, no mejor dos").quantity == 2


def test_extract_entities_keeps_raw_text():
    entities = extract_entities("Quiero 4 cuadernos")

    assert entities.quantity == 4
    assert entities.raw_text == "Quiero 4 cuadernos"


def test_extract_index_returns_first_integer():
    assert extract_index("quitar 2") == 2
    assert extract_index("eliminar el 3 y el 4") == 3
    assert extract_index("quitar") is None

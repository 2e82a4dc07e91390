import pytest

from bidrecon.normalize import clean_text, normalize_text, normalize_trade_category, normalize_unit


def test_trade_category_is_trimmed_and_lower_cased():
    assert normalize_trade_category("  Electrical ") == "electrical"
    assert normalize_trade_category(None) == ""


def test_text_collapses_internal_whitespace():
    assert normalize_text("  LED   Troffer\t2x4 ") == "led troffer 2x4"
    assert clean_text(12) == "12"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Square Feet", "sq ft"),
        ("sqft", "sq ft"),
        ("SF", "sq ft"),
        ("linear feet", "lf"),
        ("Each", "ea"),
        ("cubic yards", "cy"),
        ("cubic feet", "cf"),
        ("ton", "ton"),
        (None, "ea"),
        ("   ", "ea"),
    ],
)
def test_unit_aliases_map_to_canonical_units(raw, expected):
    assert normalize_unit(raw) == expected

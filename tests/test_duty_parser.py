# WORKFLOW: Tests for the deterministic rate-text pattern parser.
# Test scenarios:
# 1. Free / empty / ad valorem rates
# 2. Specific rates in dollars and cents per unit, mapped to weight or quantity
# 3. Compound rates and percentage ranges
# 4. Ambiguous and legal-reference text is left unparsed
# 5. Formula validation

import pytest

from etl.duty_parser import (
    generate_formula_by_pattern, map_unit_to_variable, normalize_rate_text, validate_formula,
)


@pytest.mark.parametrize("rate_text", ["Free", "free", "Free (A, AU, CA)", "None", "0%"])
def test_free_rates(rate_text):
    result = generate_formula_by_pattern(rate_text)
    assert result == {"formula": "0", "variables": [], "confidence": 1.0}


def test_empty_text_is_zero():
    assert generate_formula_by_pattern("")["formula"] == "0"
    assert generate_formula_by_pattern(None)["formula"] == "0"


def test_ad_valorem():
    result = generate_formula_by_pattern("6.8%")
    assert result == {"formula": "value * 0.068", "variables": ["value"], "confidence": 1.0}


def test_ad_valorem_words():
    assert generate_formula_by_pattern("5 percent ad valorem")["formula"] == "value * 0.05"


def test_cents_per_kilogram():
    result = generate_formula_by_pattern("2.8¢/kg")
    assert result["formula"] == "weight * 0.028"
    assert result["variables"] == ["weight"]
    assert result["confidence"] == 0.9


def test_dollars_per_kilogram():
    assert generate_formula_by_pattern("$1.50/kg")["formula"] == "weight * 1.5"


def test_cents_each_maps_to_quantity():
    result = generate_formula_by_pattern("0.9 cents each")
    assert result["formula"] == "quantity * 0.009"
    assert result["variables"] == ["quantity"]


def test_per_thousand_uses_declared_unit():
    result = generate_formula_by_pattern("$1.34/1000", unit_of_quantity="No.")
    assert result["variables"] == ["quantity"]
    assert result["formula"] == "quantity * 0.00134"


def test_compound_rate():
    result = generate_formula_by_pattern("5% + 25¢/kg")
    assert result["formula"] == "value * 0.05 + weight * 0.25"
    assert result["variables"] == ["value", "weight"]
    assert result["confidence"] == 0.9


def test_compound_rate_with_dozen():
    result = generate_formula_by_pattern("2.8 cents/doz. + 4.6%")
    assert result["formula"] == "value * 0.046 + quantity * 0.028"
    assert result["variables"] == ["value", "quantity"]


def test_percentage_range_takes_lower_bound():
    result = generate_formula_by_pattern("5%-10%")
    assert result["formula"] == "value * 0.05"
    assert result["confidence"] == 0.7


def test_ambiguous_component_context_is_not_parsed():
    assert generate_formula_by_pattern("6.4% on the case + 40¢ each on the strap") is None


def test_unrecognized_text_is_not_parsed():
    assert generate_formula_by_pattern("The rate applicable to the article of which it is a part") is None


def test_normalize_rate_text():
    assert normalize_rate_text("  5  Per Cent  ad val. ") == "5 percent ad valorem"
    assert normalize_rate_text("10¢/No.") == "10¢/number"


@pytest.mark.parametrize("unit,expected", [
    ("kg", "weight"),
    ("kgs", "weight"),
    ("clean kg", "weight"),
    ("doz.", "quantity"),
    ("pr.", "quantity"),
    ("pf. liter", "quantity"),
    ("m2", "quantity"),
    ("bushel", None),
])
def test_map_unit_to_variable(unit, expected):
    assert map_unit_to_variable(unit) == expected


def test_map_unit_falls_back_to_declared_unit():
    assert map_unit_to_variable("bushel", unit_of_quantity="bushel") == "quantity"


def test_validate_formula():
    assert validate_formula("value * 0.05 + weight * 1.2") == {
        "valid": True, "error": None, "variables": ["value", "weight"],
    }
    assert validate_formula("import os")["valid"] is False
    assert validate_formula("value * 5%")["valid"] is False

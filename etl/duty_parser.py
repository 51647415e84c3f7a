# WORKFLOW: Duty parser that turns US tariff rate text into evaluable formulas.
# Used by: Formula source selector (pattern inference, historical text fallback), note resolver
# Functions:
# 1. generate_formula_by_pattern() - Parse rate text into {formula, variables, confidence}
# 2. parse_percent_component() - Parse percentage / ad valorem components
# 3. parse_specific_component() - Parse specific duties ($/kg, cents each, cents/1000)
# 4. parse_compound() - Parse compound duties (percent + specific)
# 5. map_unit_to_variable() - Map a unit token to weight/quantity
# 6. validate_formula() - Validate formula syntax and forbidden keywords
#
# Parsing flow: Rate text -> Normalization -> Pattern detection -> Formula string
# Supports: free, ad valorem (%), specific ($/kg, cents each, /doz., /pr., /1000), compound, ranges
# Anything ambiguous returns None so callers fall through to the next formula source.

"""
Duty parser for converting tariff rate text into arithmetic formulas.
"""

import re
import logging
from typing import List, Dict, Any, Optional

logger = logging.getLogger(__name__)

WEIGHT_UNITS = re.compile(
    r'^(kg|kgs|kilogram|kilograms|gram|grams|lb|lbs|pound|pounds|oz|ounce|ounces|ton|tons|tonne|tonnes)$'
)
COUNT_UNITS = re.compile(
    r'^(ea|each|unit|units|piece|pieces|item|items|article|articles|number|no|doz|dozen|pair|pairs|pr|set|sets|gross|cent)$'
)
VOLUME_UNITS = re.compile(
    r'^(l|liter|liters|litre|litres|ml|milliliter|milliliters|gal|gallon|gallons|qt|quart|quarts|proofliter|proofliters|pfliter|pfliters)$'
)
AREA_UNITS = re.compile(r'^(sqm|m2|square meter|square meters|sqft|square foot|square feet)$')
LENGTH_UNITS = re.compile(
    r'^(m|meter|meters|cm|centimeter|centimeters|mm|millimeter|millimeters|ft|foot|feet|in|inch|inches|yd|yard|yards)$'
)
UNIT_QUALIFIERS = re.compile(r'\b(clean|net|gross|drained|proof|pf\.?)\b')

PERCENT_PATTERN = re.compile(
    r'^(\d+(?:\.\d+)?)\s*(?:%|percent|per cent)\s*(?:ad valorem)?'
    r'(?:\s+on\s+the\s+entire\s+(?:set|article|item))?$'
)
EACH_STYLE_PATTERN = re.compile(
    r'^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*'
    r'(each|ea|item|items|article|articles|unit|units|piece|pieces|pr\.?|pair|pairs|doz\.?|dozen)'
    r'(?:\s+(?:on|of|for)\b.*)?$'
)
PER_UNIT_PATTERN = re.compile(
    r'^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*(?:/|per)\s*([a-z0-9.]+(?:\s+[a-z0-9.]+){0,2})'
    r'(?:\s*(?:/|per)\s*(\d+(?:\.\d+)?))?(?:\b|$)(?:\s+(?:on|of|for)\b.*)?$'
)
RANGE_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)\s*%\s*(?:-|to)\s*(\d+(?:\.\d+)?)\s*%$')
AMBIGUOUS_CONTEXT = re.compile(r'\b(case|strap|band|bracelet|battery|movement|jewel|lead content)\b')

FORBIDDEN_KEYWORDS = re.compile(r'eval|function|=>|require|import|export|async|await|process|global|window')
ALLOWED_FORMULA_CHARS = re.compile(r'^[\d\s+\-*/().a-z_]+$', re.IGNORECASE)
FORMULA_VARIABLES = re.compile(r'\b(value|weight|quantity)\b')


def _number(value: float) -> str:
    """Render a rate without float noise (0.05 rather than 0.05000000000000001)."""
    rendered = repr(round(value, 10))
    return rendered[:-2] if rendered.endswith(".0") else rendered


def normalize_rate_text(rate_text: str) -> str:
    """Lower-case and normalize common abbreviations in rate text."""
    text = re.sub(r'\s+', ' ', rate_text.strip().lower())
    text = text.replace('ad val.', 'ad valorem')
    text = re.sub(r'per\s+cent', 'percent', text)
    text = re.sub(r'kgs?\b', 'kg', text)
    text = re.sub(r'\bno\.(?!\w)', 'number', text)
    return text


def map_unit_to_variable(unit: str, unit_of_quantity: Optional[str] = None) -> Optional[str]:
    """
    Map a rate unit token to a formula variable.

    Args:
        unit: Unit token from the rate text (e.g. "kg", "doz.", "pf. liter")
        unit_of_quantity: Unit of quantity declared on the tariff entry

    Returns:
        "weight", "quantity" or None when the unit is unknown
    """
    normalized = unit.lower().strip()
    without_qualifiers = re.sub(r'\s+', ' ', UNIT_QUALIFIERS.sub(' ', normalized)).strip()
    compact = re.sub(r'[^a-z0-9]', '', normalized)
    compact_without_qualifiers = re.sub(r'[^a-z0-9]', '', without_qualifiers)
    forms = (normalized, compact, without_qualifiers, compact_without_qualifiers)

    if any(WEIGHT_UNITS.match(form) for form in forms):
        return "weight"
    if any(COUNT_UNITS.match(form) for form in forms):
        return "quantity"
    if any(VOLUME_UNITS.match(form) for form in forms):
        return "quantity"
    if AREA_UNITS.match(normalized) or LENGTH_UNITS.match(normalized):
        return "quantity"

    if unit_of_quantity:
        declared = re.sub(r'[^a-z0-9]', '', unit_of_quantity.lower())
        if declared and (declared in compact or declared in compact_without_qualifiers):
            return "quantity"

    logger.warning(f"Unknown unit: {unit}, unable to map to formula variable")
    return None


def _specific_amount(prefix_symbol: Optional[str], amount_text: str, suffix_unit: Optional[str]) -> float:
    amount = float(amount_text)
    if prefix_symbol == '¢' or suffix_unit:
        amount = amount / 100
    return amount


def parse_percent_component(text: str) -> Optional[float]:
    """Parse "5%", "5 percent ad valorem" into a fractional rate (0.05)."""
    match = PERCENT_PATTERN.match(text)
    if not match:
        return None
    return float(match.group(1)) / 100


def parse_specific_component(text: str, unit_of_quantity: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Parse a specific duty component.

    Args:
        text: Normalized component text (e.g. "$2.50/kg", "0.9 cents each", "89.6 cents/1000")
        unit_of_quantity: Unit of quantity declared on the tariff entry

    Returns:
        {"variable": ..., "amount": ...} or None
    """
    each_match = EACH_STYLE_PATTERN.match(text)
    if each_match:
        amount = _specific_amount(each_match.group(1), each_match.group(2), each_match.group(3))
        variable = map_unit_to_variable(each_match.group(4), unit_of_quantity) or "quantity"
        return {"variable": variable, "amount": amount}

    per_unit_match = PER_UNIT_PATTERN.match(text)
    if not per_unit_match:
        return None

    amount = _specific_amount(per_unit_match.group(1), per_unit_match.group(2), per_unit_match.group(3))
    token = (per_unit_match.group(4) or "").strip()
    token2 = (per_unit_match.group(5) or "").strip()

    # Implicit quantity denominator: "89.6 cents/1000"
    if re.fullmatch(r'\d+(?:\.\d+)?', token):
        denominator = float(token)
        if denominator > 0:
            amount = amount / denominator
        inferred_unit = re.sub(r'[^a-z0-9]', '', (unit_of_quantity or "").lower())
        variable = None
        if inferred_unit:
            variable = map_unit_to_variable(inferred_unit, unit_of_quantity)
        return {"variable": variable or "quantity", "amount": amount}

    if re.fullmatch(r'\d+(?:\.\d+)?', token2):
        denominator = float(token2)
        if denominator > 0:
            amount = amount / denominator

    variable = map_unit_to_variable(token, unit_of_quantity)
    if not variable:
        return None
    return {"variable": variable, "amount": amount}


def parse_compound(text: str, unit_of_quantity: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Parse a compound duty with exactly one percentage and one or two specific parts.

    Args:
        text: Normalized rate text (e.g. "5% + 25¢/kg", "90 cents/pr. + 37.5%")
        unit_of_quantity: Unit of quantity declared on the tariff entry

    Returns:
        Formula dict or None
    """
    parts = [part.strip() for part in re.split(r'\s*\+\s*', text) if part.strip()]
    if len(parts) < 2 or len(parts) > 3:
        return None
    if AMBIGUOUS_CONTEXT.search(text):
        return None

    percent_parts = [(index, parse_percent_component(part)) for index, part in enumerate(parts)]
    percent_parts = [(index, rate) for index, rate in percent_parts if rate is not None]
    if len(percent_parts) != 1:
        return None
    percent_index, ad_valorem_rate = percent_parts[0]

    specific_parts = []
    for index, part in enumerate(parts):
        if index == percent_index:
            continue
        component = parse_specific_component(part, unit_of_quantity)
        if component:
            specific_parts.append(component)

    if len(specific_parts) != len(parts) - 1:
        return None

    terms = [f"{component['variable']} * {_number(component['amount'])}" for component in specific_parts]
    variables = ["value"]
    for component in specific_parts:
        if component["variable"] not in variables:
            variables.append(component["variable"])

    return {
        "formula": f"value * {_number(ad_valorem_rate)} + {' + '.join(terms)}",
        "variables": variables,
        "confidence": 0.9,
    }


def generate_formula_by_pattern(rate_text: Optional[str], unit_of_quantity: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Generate an arithmetic formula from tariff rate text using deterministic patterns.

    Args:
        rate_text: Raw rate text (e.g. "Free", "6.8%", "2.8 cents/doz. + 4.6%")
        unit_of_quantity: Unit of quantity declared on the tariff entry

    Returns:
        {"formula": str, "variables": List[str], "confidence": float} or None
    """
    if not rate_text or not rate_text.strip():
        return {"formula": "0", "variables": [], "confidence": 1.0}

    text = normalize_rate_text(rate_text)

    if re.match(r'^(free|none|0%?)$', text) or re.match(r'^free\b', text):
        return {"formula": "0", "variables": [], "confidence": 1.0}

    ad_valorem_rate = parse_percent_component(text)
    if ad_valorem_rate is not None:
        return {"formula": f"value * {_number(ad_valorem_rate)}", "variables": ["value"], "confidence": 1.0}

    compound = parse_compound(text, unit_of_quantity)
    if compound:
        return compound

    specific = parse_specific_component(text, unit_of_quantity)
    if specific:
        return {
            "formula": f"{specific['variable']} * {_number(specific['amount'])}",
            "variables": [specific["variable"]],
            "confidence": 0.9,
        }

    range_match = RANGE_PATTERN.match(text)
    if range_match:
        min_rate = float(range_match.group(1)) / 100
        return {"formula": f"value * {_number(min_rate)}", "variables": ["value"], "confidence": 0.7}

    logger.debug(f"No deterministic pattern for rate text '{rate_text}'")
    return None


def extract_variables(formula: str) -> List[str]:
    """Extract shipment variable names referenced by a formula."""
    variables: List[str] = []
    for match in FORMULA_VARIABLES.finditer(formula):
        if match.group(1) not in variables:
            variables.append(match.group(1))
    return variables


def validate_formula(formula: str) -> Dict[str, Any]:
    """
    Validate formula syntax.

    Args:
        formula: Formula string

    Returns:
        {"valid": bool, "error": Optional[str], "variables": List[str]}
    """
    if FORBIDDEN_KEYWORDS.search(formula):
        return {"valid": False, "error": "Formula contains forbidden keywords", "variables": []}
    if not ALLOWED_FORMULA_CHARS.match(formula):
        return {"valid": False, "error": "Formula contains invalid characters", "variables": []}
    return {"valid": True, "error": None, "variables": extract_variables(formula)}


if __name__ == "__main__":
    test_rates = [
        "Free",
        "6.8%",
        "2.8 cents/doz. + 4.6%",
        "$1.34/1000",
        "25¢/kg",
        "5%-10%",
        "The rate applicable to the article of which it is a part",
    ]

    for rate in test_rates:
        print(f"{rate!r}: {generate_formula_by_pattern(rate)}")

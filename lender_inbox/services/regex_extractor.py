"""
Regex-based Extractor for Lender Reply Fields.

Extracts offer terms and embedded identifiers from a normalized reply body
using pattern matching only. Each field is produced by a named rule; rules
run independently, so a miss in one never blocks another. A missing value
is None, never 0 or "".
"""

import re
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple


@dataclass(frozen=True)
class ExtractedFields:
    """Best-effort values recovered from one reply."""
    offered_amount: Optional[Decimal] = None
    factor_rate: Optional[Decimal] = None
    terms: Optional[str] = None
    application_id: Optional[str] = None
    lender_id: Optional[str] = None

    def offer_fields(self) -> Dict[str, Any]:
        """Offer columns that carry a value (absent ones are left out)."""
        values = {
            "offered_amount": self.offered_amount,
            "factor_rate": self.factor_rate,
            "terms": self.terms,
        }
        return {k: v for k, v in values.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("offered_amount", "factor_rate"):
            if data[key] is not None:
                data[key] = float(data[key])
        return data


UUID_PATTERN = r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}'

APPLICATION_ID_PATTERN = re.compile(rf'Application\s+ID:\s*({UUID_PATTERN})', re.IGNORECASE)
LENDER_ID_PATTERN = re.compile(rf'Lender\s+ID:\s*({UUID_PATTERN})', re.IGNORECASE)

# $120,000 / 120,000 / 120000 / 120000usd; never the leading segments of a UUID
MONEY_PATTERN = re.compile(
    r'(?<![\w.\-])(\$\s*)?([0-9]{1,3}(?:,[0-9]{3})+|[0-9]{4,})(?![0-9A-Fa-f]*-[0-9A-Fa-f]{4})(?:\s*(usd|dollars))?',
    re.IGNORECASE,
)

# Tried in order; first hit wins
FACTOR_RATE_PATTERNS: List[Pattern] = [
    re.compile(r'factor\s*rate\s*(?:[:=]|of|is|at)?\s*(\d+(?:[.,]\d+)?)', re.IGNORECASE),
    re.compile(r'(\d+(?:[.,]\d+)?)[\sx]*factor\s*rate', re.IGNORECASE),
]

TERM_PATTERNS: List[Pattern] = [
    re.compile(r'(\d{1,3})\s*-\s*(month|months)\s*term', re.IGNORECASE),
    re.compile(r'(\d{1,3})\s*(month|months)\b', re.IGNORECASE),
]


def _to_positive_decimal(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def extract_amount(text: str) -> Optional[Decimal]:
    """First money-like token, commas stripped; must be > 0."""
    match = MONEY_PATTERN.search(text)
    if not match:
        return None
    return _to_positive_decimal(match.group(2).replace(',', ''))


def extract_factor_rate(text: str) -> Optional[Decimal]:
    """'factor rate: 1.25' first, then '1.25x factor rate'."""
    for pattern in FACTOR_RATE_PATTERNS:
        match = pattern.search(text)
        if match:
            rate = _to_positive_decimal(match.group(1).replace(',', '.'))
            if rate is not None:
                return rate
    return None


def extract_terms(text: str) -> Optional[str]:
    """'12-month term' first, then '12 months'; always '<n> months'."""
    for pattern in TERM_PATTERNS:
        match = pattern.search(text)
        if match:
            return f"{int(match.group(1))} months"
    return None


def extract_application_id(text: str) -> Optional[str]:
    match = APPLICATION_ID_PATTERN.search(text)
    return match.group(1).lower() if match else None


def extract_lender_id(text: str) -> Optional[str]:
    match = LENDER_ID_PATTERN.search(text)
    return match.group(1).lower() if match else None


# Precedence is the list order; each rule maps to one ExtractedFields attribute
EXTRACTION_RULES: List[Tuple[str, Callable[[str], Any]]] = [
    ("offered_amount", extract_amount),
    ("factor_rate", extract_factor_rate),
    ("terms", extract_terms),
    ("application_id", extract_application_id),
    ("lender_id", extract_lender_id),
]


def extract_fields(text: str) -> ExtractedFields:
    """
    Run every extraction rule over the reply body.

    Args:
        text: Normalized reply body

    Returns:
        ExtractedFields with None for anything not found
    """
    if not text:
        return ExtractedFields()

    values: Dict[str, Any] = {}
    for field_name, rule in EXTRACTION_RULES:
        try:
            values[field_name] = rule(text)
        except (ValueError, TypeError, ArithmeticError):
            values[field_name] = None

    return ExtractedFields(**values)

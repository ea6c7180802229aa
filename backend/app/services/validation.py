"""Business-rule checks for receipt fields.

Every check returns a ``ValidationResult``; nothing here raises for a bad
value. Errors block acceptance, warnings are advisory and always surfaced.
"""

import math
import re
from datetime import date
from typing import Any, Optional

from app.schemas.receipt import Category, ValidationResult

LARGE_AMOUNT_THRESHOLD = 100_000
MAX_RECEIPT_AGE_YEARS = 10
VENDOR_NAME_MIN = 2
VENDOR_NAME_MAX = 100

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WHITESPACE_RE = re.compile(r"\s")

# Syntax only. Registration is never checked.
VAT_PATTERNS: dict[str, re.Pattern[str]] = {
    "AT": re.compile(r"^ATU\d{8}$"),
    "BE": re.compile(r"^BE0\d{9}$"),
    "BG": re.compile(r"^BG\d{9,10}$"),
    "CY": re.compile(r"^CY\d{8}[A-Z]$"),
    "CZ": re.compile(r"^CZ\d{8,10}$"),
    "DE": re.compile(r"^DE\d{9}$"),
    "DK": re.compile(r"^DK\d{8}$"),
    "EE": re.compile(r"^EE\d{9}$"),
    "EL": re.compile(r"^EL\d{9}$"),
    "ES": re.compile(r"^ES[A-Z0-9]\d{7}[A-Z0-9]$"),
    "FI": re.compile(r"^FI\d{8}$"),
    "FR": re.compile(r"^FR[A-Z0-9]{2}\d{9}$"),
    "GB": re.compile(r"^GB(\d{9}|\d{12}|GD\d{3}|HA\d{3})$"),
    "HR": re.compile(r"^HR\d{11}$"),
    "HU": re.compile(r"^HU\d{8}$"),
    "IE": re.compile(r"^IE\d[A-Z0-9]\d{5}[A-Z]$"),
    "IT": re.compile(r"^IT\d{11}$"),
    "LT": re.compile(r"^LT(\d{9}|\d{12})$"),
    "LU": re.compile(r"^LU\d{8}$"),
    "LV": re.compile(r"^LV\d{11}$"),
    "MT": re.compile(r"^MT\d{8}$"),
    "NL": re.compile(r"^NL\d{9}B\d{2}$"),
    "PL": re.compile(r"^PL\d{10}$"),
    "PT": re.compile(r"^PT\d{9}$"),
    "RO": re.compile(r"^RO\d{2,10}$"),
    "SE": re.compile(r"^SE\d{12}$"),
    "SI": re.compile(r"^SI\d{8}$"),
    "SK": re.compile(r"^SK\d{10}$"),
    # Non-EU
    "CH": re.compile(r"^CHE\d{9}(MWST|TVA|IVA)$"),
    "NO": re.compile(r"^NO\d{9}MVA$"),
}

VAT_FORMAT_DESCRIPTIONS: dict[str, str] = {
    "AT": "ATU + 8 digits",
    "BE": "BE0 + 9 digits",
    "BG": "BG + 9-10 digits",
    "CY": "CY + 8 digits + 1 letter",
    "CZ": "CZ + 8-10 digits",
    "DE": "DE + 9 digits",
    "DK": "DK + 8 digits",
    "EE": "EE + 9 digits",
    "EL": "EL + 9 digits",
    "ES": "ES + letter/digit + 7 digits + letter/digit",
    "FI": "FI + 8 digits",
    "FR": "FR + 2 alphanumeric + 9 digits",
    "GB": "GB + 9 or 12 digits (or GD/HA + 3 digits)",
    "HR": "HR + 11 digits",
    "HU": "HU + 8 digits",
    "IE": "IE + digit + alphanumeric + 5 digits + letter",
    "IT": "IT + 11 digits",
    "LT": "LT + 9 or 12 digits",
    "LU": "LU + 8 digits",
    "LV": "LV + 11 digits",
    "MT": "MT + 8 digits",
    "NL": "NL + 9 digits + B + 2 digits",
    "PL": "PL + 10 digits",
    "PT": "PT + 9 digits",
    "RO": "RO + 2-10 digits",
    "SE": "SE + 12 digits",
    "SI": "SI + 8 digits",
    "SK": "SK + 10 digits",
    "CH": "CHE + 9 digits + MWST/TVA/IVA",
    "NO": "NO + 9 digits + MVA",
}


def normalize_vat_number(vat_number: str) -> str:
    return _WHITESPACE_RE.sub("", vat_number).upper()


def validate_vat_number(vat_number: Optional[str]) -> ValidationResult:
    result = ValidationResult()
    if not vat_number or not vat_number.strip():
        return result

    normalized = normalize_vat_number(vat_number)
    country = normalized[:2]
    pattern = VAT_PATTERNS.get(country)
    if pattern is None:
        result.warnings.append(
            f'VAT number format for country "{country}" is not recognized. '
            "Manual verification recommended."
        )
        return result

    if not pattern.match(normalized):
        description = VAT_FORMAT_DESCRIPTIONS.get(country, "Unknown format")
        result.errors.append(
            f"Invalid VAT number format for {country}. Expected format: {description}"
        )
    return result


def validate_category(category: Any) -> ValidationResult:
    result = ValidationResult()
    text = category.value if isinstance(category, Category) else category
    if text is None or not str(text).strip():
        result.errors.append("Category is required")
        return result

    if str(text) not in Category.values():
        result.errors.append(
            f'Invalid category "{text}". Must be one of: {", ".join(Category.values())}'
        )
    return result


def _format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return str(amount)


def validate_amount(amount: Any, allow_zero: bool = True) -> ValidationResult:
    """Check a monetary amount. ``None`` is "required", distinct from zero."""
    result = ValidationResult()
    if amount is None:
        result.errors.append("Amount is required")
        return result

    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount):
        result.errors.append("Amount must be a valid number")
        return result

    if amount < 0:
        result.errors.append("Amount cannot be negative")
        return result

    if not allow_zero and amount == 0:
        result.errors.append("Amount cannot be zero")
        return result

    if amount > LARGE_AMOUNT_THRESHOLD:
        result.warnings.append(f"Amount {_format_amount(amount)} is unusually large. Please verify.")
    return result


def validate_vendor_name(vendor_name: Optional[str]) -> ValidationResult:
    result = ValidationResult()
    if not vendor_name or not vendor_name.strip():
        result.errors.append("Vendor name is required")
        return result

    trimmed = vendor_name.strip()
    if len(trimmed) < VENDOR_NAME_MIN:
        result.errors.append(f"Vendor name must be at least {VENDOR_NAME_MIN} characters")
    if len(trimmed) > VENDOR_NAME_MAX:
        result.errors.append(f"Vendor name must not exceed {VENDOR_NAME_MAX} characters")
    return result


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def validate_transaction_date(date_string: Optional[str], today: Optional[date] = None) -> ValidationResult:
    result = ValidationResult()
    if not date_string or not date_string.strip():
        result.errors.append("Transaction date is required")
        return result

    if not _DATE_RE.match(date_string):
        result.errors.append("Transaction date must be in YYYY-MM-DD format")
        return result

    try:
        parsed = date.fromisoformat(date_string)
    except ValueError:
        result.errors.append("Transaction date is not a valid date")
        return result

    today = today or date.today()
    if parsed > today:
        result.warnings.append("Transaction date is in the future. Please verify.")
    if parsed < _years_before(today, MAX_RECEIPT_AGE_YEARS):
        result.warnings.append(
            f"Transaction date is more than {MAX_RECEIPT_AGE_YEARS} years old ({date_string}). Please verify."
        )
    return result


def validate_receipt(
    *,
    vendor_name: Optional[str],
    transaction_date: Optional[str],
    total_amount: Any,
    category: Any,
    vat_number: Optional[str] = None,
    today: Optional[date] = None,
) -> ValidationResult:
    """Run every field check, in a fixed order, and concatenate the results."""
    combined = ValidationResult()
    for partial in (
        validate_vendor_name(vendor_name),
        validate_transaction_date(transaction_date, today=today),
        validate_amount(total_amount, allow_zero=True),
        validate_category(category),
        validate_vat_number(vat_number),
    ):
        combined.extend(partial)
    return combined

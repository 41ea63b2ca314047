"""
Currency code validation and minor-unit lookup
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Dict

from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

# ISO-4217 minor units for the currencies the escrow core settles in
SUPPORTED_CURRENCIES: Dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "NZD": 2,
    "CHF": 2,
    "SEK": 2,
    "NOK": 2,
    "DKK": 2,
    "SGD": 2,
    "HKD": 2,
    "MXN": 2,
    "NGN": 2,
    "JPY": 0,
    "KRW": 0,
}

_ISO_CODE = re.compile(r"^[A-Z]{3}$")


def validate_currency_code(currency: str) -> str:
    """Return the normalized ISO code or raise ValidationError"""
    if not isinstance(currency, str):
        raise ValidationError("Currency must be a 3-letter ISO code")
    code = currency.strip().upper()
    if not _ISO_CODE.match(code):
        raise ValidationError(f"Invalid currency code '{currency}'")
    if code not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency '{code}'")
    return code


def minor_units(currency: str) -> int:
    return SUPPORTED_CURRENCIES[validate_currency_code(currency)]


def quantum_for(currency: str) -> Decimal:
    """Smallest representable amount for the currency, e.g. Decimal('0.01')"""
    return Decimal(1).scaleb(-minor_units(currency))


def to_decimal(value) -> Decimal:
    """Parse a caller-supplied amount without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount '{value}'") from e

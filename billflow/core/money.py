"""
Fixed-point money helpers.

All monetary values are ``Decimal``. Each derived amount (line amount,
discount, tax) is rounded once, half-up, to the currency's minor unit.
Sums of already-rounded amounts are exact and are never rounded again.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict

from billflow.core.exceptions import ValidationError


class Currency(str, Enum):
    TWD = "TWD"
    USD = "USD"
    EUR = "EUR"


@dataclass(frozen=True)
class CurrencyConfig:
    symbol: str
    decimals: int

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.decimals)


CURRENCY_CONFIG: Dict[Currency, CurrencyConfig] = {
    Currency.TWD: CurrencyConfig(symbol="NT$", decimals=0),
    Currency.USD: CurrencyConfig(symbol="$", decimals=2),
    Currency.EUR: CurrencyConfig(symbol="€", decimals=2),
}

ZERO = Decimal("0")


def get_currency(code: Any) -> Currency:
    """Resolve a currency code, raising ValidationError for unknown codes."""
    if isinstance(code, Currency):
        return code
    try:
        return Currency(str(code).strip().upper())
    except ValueError:
        valid = ", ".join(c.value for c in Currency)
        raise ValidationError.for_field("currency", f"Unknown currency '{code}'. Valid currencies: {valid}")


def currency_config(currency: Any) -> CurrencyConfig:
    return CURRENCY_CONFIG[get_currency(currency)]


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Convert user input to Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1") rather than its
    binary expansion. NaN and infinities are rejected.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError.for_field(field, "Must be a number")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise ValidationError.for_field(field, "Must be a number")
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        raise ValidationError.for_field(field, "Must be a number")

    if not result.is_finite():
        raise ValidationError.for_field(field, "Must be a finite number")
    return result


def round_money(value: Decimal, currency: Any) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return value.quantize(currency_config(currency).quantum, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal, currency: Any) -> str:
    """
    Format an amount for display.

    >>> format_money(Decimal("1000"), "TWD")
    'NT$1,000'
    >>> format_money(Decimal("1000"), "USD")
    '$1,000.00'
    """
    config = currency_config(currency)
    rounded = round_money(Decimal(amount), currency)
    sign = "-" if rounded < 0 else ""
    return f"{sign}{config.symbol}{abs(rounded):,.{config.decimals}f}"


def format_percentage(rate: Decimal) -> str:
    """Format a fractional rate: 0.05 -> '5%'."""
    percent = (Decimal(rate) * 100).normalize()
    if percent == percent.to_integral_value():
        return f"{percent.quantize(Decimal(1))}%"
    return f"{percent}%"

"""
Invoice totals calculation.

Order of operations (fixed):
    1. subtotal      = sum of per-line amounts (each rounded on its own)
    2. discount      = none | round(subtotal * p / 100) | min(fixed, subtotal)
    3. taxable base  = subtotal - discount
    4. tax           = round(taxable base * tax rate)
    5. total         = taxable base + tax

Everything here is pure: no clock, no locale, no I/O. The same inputs always
produce the same Totals, which is what lets a persisted snapshot be
re-derived from its stored line items.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Union

from billflow.core.exceptions import ValidationError
from billflow.core.money import ZERO, get_currency, round_money, to_decimal


HUNDRED = Decimal("100")
ONE = Decimal("1")

# Money columns are Numeric(14, 2)
MAX_AMOUNT = Decimal("1e12")


@dataclass(frozen=True)
class LineItemInput:
    description: str
    quantity: Decimal
    unit_price: Decimal
    sort_order: int = 0


@dataclass(frozen=True)
class NoDiscount:
    type: Optional[str] = None
    value: Decimal = ZERO


@dataclass(frozen=True)
class PercentageDiscount:
    value: Decimal
    type: str = "percentage"


@dataclass(frozen=True)
class FixedAmountDiscount:
    value: Decimal
    type: str = "fixed"


DiscountSpec = Union[NoDiscount, PercentageDiscount, FixedAmountDiscount]

NO_DISCOUNT = NoDiscount()


def discount_from_fields(discount_type: Optional[str], discount_value: Any) -> DiscountSpec:
    """Rebuild a DiscountSpec from its two stored columns."""
    if discount_type is None:
        return NO_DISCOUNT
    value = to_decimal(discount_value if discount_value is not None else 0, "discount.value")
    if discount_type == "percentage":
        return PercentageDiscount(value)
    if discount_type == "fixed":
        return FixedAmountDiscount(value)
    raise ValidationError.for_field("discount.type", f"Unknown discount type '{discount_type}'")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_base: Decimal
    tax_amount: Decimal
    total: Decimal


class LineItemEngine:
    """Per-line amounts and the items subtotal."""

    def __init__(self, currency: Any):
        self.currency = get_currency(currency)

    def line_amount(self, quantity: Decimal, unit_price: Decimal) -> Decimal:
        return round_money(quantity * unit_price, self.currency)

    def validate(self, items: Sequence[LineItemInput]) -> None:
        if not items:
            raise ValidationError.for_field("items", "Add at least one item to the invoice")

        errors = []
        for index, item in enumerate(items):
            if item.quantity <= 0:
                errors.append({"field": f"items.{index}.quantity", "message": "Must be greater than 0"})
            if item.unit_price < 0:
                errors.append({"field": f"items.{index}.unit_price", "message": "Cannot be negative"})
        if errors:
            raise ValidationError("Validation failed", errors)

    def amounts(self, items: Sequence[LineItemInput]) -> List[Decimal]:
        self.validate(items)
        return [self.line_amount(item.quantity, item.unit_price) for item in items]

    def subtotal(self, items: Sequence[LineItemInput]) -> Decimal:
        return sum(self.amounts(items), ZERO)


class DiscountPolicy:
    """Turns a DiscountSpec into an amount bounded by the subtotal."""

    def __init__(self, currency: Any, reject_excess_fixed: bool = False):
        self.currency = get_currency(currency)
        self.reject_excess_fixed = reject_excess_fixed

    def validate(self, discount: DiscountSpec) -> None:
        if isinstance(discount, PercentageDiscount):
            if not ZERO <= discount.value <= HUNDRED:
                raise ValidationError.for_field("discount.value", "Percentage must be between 0 and 100")
        elif isinstance(discount, FixedAmountDiscount):
            if discount.value < 0:
                raise ValidationError.for_field("discount.value", "Cannot be negative")
        elif not isinstance(discount, NoDiscount):
            raise ValidationError.for_field("discount", "Unsupported discount")

    def apply(self, subtotal: Decimal, discount: DiscountSpec) -> Decimal:
        self.validate(discount)

        if isinstance(discount, PercentageDiscount):
            amount = round_money(subtotal * discount.value / HUNDRED, self.currency)
            return max(ZERO, min(amount, subtotal))

        if isinstance(discount, FixedAmountDiscount):
            # Rounded to the minor unit before the clamp; taxable base is always in whole minor units
            amount = round_money(discount.value, self.currency)
            if amount > subtotal and self.reject_excess_fixed:
                raise ValidationError.for_field("discount.value", "Discount cannot exceed the subtotal")
            return min(amount, subtotal)

        return ZERO


class TaxPolicy:
    """Tax on the post-discount base."""

    def __init__(self, currency: Any):
        self.currency = get_currency(currency)

    @staticmethod
    def validate(tax_rate: Decimal) -> None:
        if not ZERO <= tax_rate <= ONE:
            raise ValidationError.for_field("tax_rate", "Tax rate must be between 0 and 1")

    def apply(self, taxable_base: Decimal, tax_rate: Decimal) -> Decimal:
        self.validate(tax_rate)
        return round_money(taxable_base * tax_rate, self.currency)


class TotalsCalculator:
    """Composes the line, discount and tax policies into one Totals snapshot."""

    def __init__(self, reject_excess_fixed_discount: bool = False):
        self.reject_excess_fixed_discount = reject_excess_fixed_discount

    def compute(
        self,
        items: Sequence[LineItemInput],
        tax_rate: Decimal,
        discount: DiscountSpec = NO_DISCOUNT,
        currency: Any = "TWD",
    ) -> Totals:
        tax_rate = to_decimal(tax_rate, "tax_rate")
        TaxPolicy.validate(tax_rate)

        subtotal = LineItemEngine(currency).subtotal(items)
        discount_amount = DiscountPolicy(currency, self.reject_excess_fixed_discount).apply(subtotal, discount)
        taxable_base = subtotal - discount_amount
        tax_amount = TaxPolicy(currency).apply(taxable_base, tax_rate)
        total = taxable_base + tax_amount
        if subtotal >= MAX_AMOUNT or total >= MAX_AMOUNT:
            raise ValidationError.for_field("items", "Invoice total is too large")

        return Totals(
            subtotal=subtotal,
            discount_amount=discount_amount,
            taxable_base=taxable_base,
            tax_amount=tax_amount,
            total=total,
        )


def compute_totals(
    items: Sequence[LineItemInput],
    tax_rate: Decimal,
    discount: DiscountSpec = NO_DISCOUNT,
    currency: Any = "TWD",
) -> Totals:
    """
    Quick function for one-off calculations.

    Usage:
        totals = compute_totals(items, Decimal("0.05"), PercentageDiscount(Decimal("10")))
    """
    return TotalsCalculator().compute(items, tax_rate, discount, currency)

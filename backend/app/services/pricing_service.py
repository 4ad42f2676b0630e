# Overview: Pricing calculator; unit prices, line sub-totals and order totals in fixed-point decimal.

"""
Pricing rules

- Unit price = discounted_price if set, else price, plus EITHER the sum of
  the chosen legacy variants' additional_price OR the combination's
  price_modifier. The two variant paths never combine on one line.
- sub_total = quantity * unit price, computed once at order creation.
- total = sum(sub_total) + shipping + tax, rounded to 2 places (half-up)
  at the total only, never per line.
- Money is Decimal end to end. Floats arriving from JSON are converted
  through str() so 0.1 stays 0.1.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from ..errors import InvalidItemSpec, ValidationError


CENT = Decimal("0.01")


# =============================================================================
# VARIANT SELECTION (tagged union)
# =============================================================================

@dataclass(frozen=True)
class NoVariant:
    kind = "none"


@dataclass(frozen=True)
class LegacyVariants:
    """One or more ProductVariant ids priced by additional_price."""
    variant_ids: tuple[int, ...]
    kind = "legacy"


@dataclass(frozen=True)
class CombinationChoice:
    """A purchasable VariantCombination priced by price_modifier."""
    combination_id: int
    kind = "combination"


VariantSelection = Union[NoVariant, LegacyVariants, CombinationChoice]


# =============================================================================
# MONEY HELPERS
# =============================================================================

def to_money(value, field: str = "amount", *, allow_negative: bool = False) -> Decimal:
    """Coerce user/DB input to Decimal. Rejects booleans, NaN and infinities."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number", details={"field": field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})
    if amount < 0 and not allow_negative:
        raise ValidationError(f"{field} cannot be negative", details={"field": field})
    return amount


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Decimal major units -> integer minor units (e.g. naira -> kobo)."""
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# =============================================================================
# CALCULATOR
# =============================================================================

def base_price(price, discounted_price=None) -> Decimal:
    """discounted_price wins when set (including an explicit 0)."""
    if discounted_price is not None:
        return to_money(discounted_price, "discounted_price")
    return to_money(price, "price")


def line_unit_price(
    price,
    discounted_price=None,
    *,
    additional_prices: Iterable = (),
    price_modifier=None,
) -> Decimal:
    """
    Unit price for one order line.

    additional_prices belongs to the legacy path, price_modifier to the
    combination path; passing both raises InvalidItemSpec.
    """
    additional = [to_money(p, "additional_price", allow_negative=True) for p in additional_prices]
    if additional and price_modifier is not None:
        raise InvalidItemSpec(
            "An item cannot combine legacy variant pricing with a variant combination",
        )

    unit = base_price(price, discounted_price)
    if additional:
        unit += sum(additional, Decimal("0"))
    elif price_modifier is not None:
        unit += to_money(price_modifier, "price_modifier", allow_negative=True)

    if unit < 0:
        raise ValidationError("Computed unit price cannot be negative", details={"unit_price": str(unit)})
    return unit


def line_sub_total(unit_price: Decimal, quantity: int) -> Decimal:
    return to_money(unit_price, "unit_price") * quantity


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "shipping": str(self.shipping_cost),
            "tax": str(self.tax_amount),
            "total": str(self.total),
        }


def order_total(sub_totals: Iterable, shipping_cost=0, tax_amount=0) -> OrderTotals:
    """sum(sub_totals) + shipping + tax, rounded once at the end."""
    subtotal = sum((to_money(s, "sub_total") for s in sub_totals), Decimal("0"))
    shipping = to_money(shipping_cost, "shipping_cost")
    tax = to_money(tax_amount, "tax_amount")
    return OrderTotals(
        subtotal=round_money(subtotal),
        shipping_cost=round_money(shipping),
        tax_amount=round_money(tax),
        total=round_money(subtotal + shipping + tax),
    )

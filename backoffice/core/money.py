"""
Money/reconciliation calculator.

All amounts are integer centavos (PHP minor units). Conversion from user input
goes through ``to_cents`` so no binary float ever touches a balance.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Protocol, Union

from backoffice.core.errors import ValidationError

CURRENCY = "PHP"

EXPENSE_CATEGORIES = (
    "jeep",
    "bus",
    "fx_van",
    "gas",
    "toll",
    "meals",
    "lodging",
    "others",
)

# Per-category ceiling: 1,000,000,000.00 pesos
MAX_CATEGORY_CENTS = 100_000_000_000


class HasCategoryAmounts(Protocol):
    jeep: int
    bus: int
    fx_van: int
    gas: int
    toll: int
    meals: int
    lodging: int
    others: int


@dataclass(frozen=True)
class Totals:
    total: int
    return_to_company: int
    reimbursement: int


def to_cents(value: Union[Decimal, str, int]) -> int:
    """Convert a peso amount ("1234.50", Decimal, int pesos) to centavos."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    cents = amount * 100
    if cents != cents.to_integral_value():
        raise ValidationError(
            f"Amount {value!r} has more than 2 decimal places"
        )
    return int(cents)


def format_php(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}PHP {whole:,}.{frac:02d}"


def validate_category_amounts(item: HasCategoryAmounts) -> None:
    for category in EXPENSE_CATEGORIES:
        amount = getattr(item, category)
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError(
                f"Expense '{category}' must be an integer amount of centavos",
                details={"category": category},
            )
        if amount < 0:
            raise ValidationError(
                f"Expense '{category}' cannot be negative",
                details={"category": category, "amount_cents": amount},
            )
        if amount > MAX_CATEGORY_CENTS:
            raise ValidationError(
                f"Expense '{category}' exceeds the maximum amount",
                details={"category": category, "max_cents": MAX_CATEGORY_CENTS},
            )


def compute_item_total(item: HasCategoryAmounts) -> int:
    validate_category_amounts(item)
    return sum(getattr(item, category) for category in EXPENSE_CATEGORIES)


def compute_totals(cash_advance_cents: int, items: Iterable[HasCategoryAmounts]) -> Totals:
    total = sum(compute_item_total(item) for item in items)
    diff = cash_advance_cents - total
    # Exactly one side is nonzero, or both are zero on an exact match
    return Totals(
        total=total,
        return_to_company=max(0, diff),
        reimbursement=max(0, -diff),
    )

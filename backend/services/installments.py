"""Installment Calculator - annual plans paid in N parts.

1-3 installments split the base amount evenly. 4, 5, 6 and 12 installments
carry compound interest at 2.5% a month: total = base * (1 + r) ** count.

All arithmetic stays at full Decimal precision; rounding to two places only
happens in InstallmentBreakdown.rounded() for presentation and in to_cents()
when handing an amount to the processor.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import List, Tuple

from services.billing_errors import InvalidAmount, InvalidInstallmentCount

INSTALLMENT_COUNTS: Tuple[int, ...] = (1, 2, 3, 4, 5, 6, 12)
INTEREST_FREE_COUNTS = frozenset({1, 2, 3})
MONTHLY_INTEREST_RATE = Decimal("0.025")

CENT = Decimal("0.01")


@dataclass(frozen=True)
class InstallmentOption:
    count: int
    has_interest: bool
    monthly_rate: Decimal


@dataclass(frozen=True)
class InstallmentBreakdown:
    count: int
    per_installment: Decimal
    total: Decimal
    interest_paid: Decimal

    @property
    def has_interest(self) -> bool:
        return self.interest_paid > 0

    def rounded(self) -> "InstallmentBreakdown":
        return InstallmentBreakdown(
            count=self.count,
            per_installment=to_currency(self.per_installment),
            total=to_currency(self.total),
            interest_paid=to_currency(self.interest_paid),
        )

    def to_dict(self) -> dict:
        shown = self.rounded()
        return {
            "count": self.count,
            "has_interest": self.has_interest,
            "per_installment": str(shown.per_installment),
            "total": str(shown.total),
            "interest_paid": str(shown.interest_paid),
        }


def to_currency(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Minor units for the processor."""
    return int((to_currency(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def get_option(count) -> InstallmentOption:
    if isinstance(count, bool) or not isinstance(count, int) or count not in INSTALLMENT_COUNTS:
        raise InvalidInstallmentCount(
            f"Installment count must be one of {list(INSTALLMENT_COUNTS)}, got {count!r}"
        )
    has_interest = count not in INTEREST_FREE_COUNTS
    return InstallmentOption(
        count=count,
        has_interest=has_interest,
        monthly_rate=MONTHLY_INTEREST_RATE if has_interest else Decimal("0"),
    )


def _as_decimal(base_amount) -> Decimal:
    if isinstance(base_amount, bool):
        raise InvalidAmount(f"Invalid amount: {base_amount!r}")
    try:
        amount = base_amount if isinstance(base_amount, Decimal) else Decimal(str(base_amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid amount: {base_amount!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {base_amount!r}")
    return amount


def compute_installment(base_amount, count: int) -> InstallmentBreakdown:
    """Compute per-installment, total and interest for `count` installments."""
    option = get_option(count)
    base = _as_decimal(base_amount)

    if not option.has_interest:
        return InstallmentBreakdown(
            count=count,
            per_installment=base / count,
            total=base,
            interest_paid=Decimal("0"),
        )

    total = base * (1 + option.monthly_rate) ** count
    return InstallmentBreakdown(
        count=count,
        per_installment=total / count,
        total=total,
        interest_paid=total - base,
    )


def installment_options(base_amount) -> List[InstallmentBreakdown]:
    return [compute_installment(base_amount, count) for count in INSTALLMENT_COUNTS]

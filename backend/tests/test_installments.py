"""
Installment calculator: interest-free 1-3x, 2.5% compound interest for 4/5/6/12x.

Ensures:
- 1-3 installments never add interest.
- Interest totals strictly increase with the count and exceed the base.
- Rounding only happens at presentation (rounded / to_dict / to_cents).
- Counts outside {1,2,3,4,5,6,12} and non-positive amounts are rejected.
"""
from decimal import Decimal

import pytest

from services.billing_errors import InvalidAmount, InvalidInstallmentCount
from services.installments import (
    INSTALLMENT_COUNTS,
    compute_installment,
    get_option,
    installment_options,
    to_cents,
)


@pytest.mark.parametrize("count", [1, 2, 3])
def test_interest_free_counts_keep_the_base_total(count):
    result = compute_installment(Decimal("499.00"), count)
    assert abs(result.total - Decimal("499.00")) <= Decimal("0.01")
    assert result.interest_paid == 0
    assert result.has_interest is False
    assert result.per_installment == Decimal("499.00") / count


def test_three_installments_split_evenly_at_presentation():
    shown = compute_installment(Decimal("100"), 3).rounded()
    assert shown.per_installment == Decimal("33.33")
    assert shown.total == Decimal("100.00")


def test_four_installments_of_100():
    """100 × 1.025^4 ≈ 110.38, about 27.59 per installment."""
    result = compute_installment(Decimal("100"), 4)
    shown = result.rounded()
    assert shown.total == Decimal("110.38")
    assert abs(result.per_installment - Decimal("27.59")) <= Decimal("0.01")
    assert shown.interest_paid == Decimal("10.38")
    assert result.has_interest is True


def test_interest_total_strictly_increases_with_count():
    totals = [compute_installment(Decimal("899.00"), n).total for n in (4, 5, 6, 12)]
    assert all(t > Decimal("899.00") for t in totals)
    assert totals == sorted(totals)
    assert len(set(totals)) == len(totals)


def test_internal_values_are_not_rounded():
    """A 12-step schedule keeps full precision until presentation."""
    result = compute_installment(Decimal("1499.00"), 12)
    assert result.total == Decimal("1499.00") * Decimal("1.025") ** 12
    assert result.total != result.rounded().total


def test_accepts_string_and_int_amounts():
    assert compute_installment("49.90", 2).total == Decimal("49.90")
    assert compute_installment(100, 1).total == Decimal("100")


@pytest.mark.parametrize("count", [0, 7, 10, 24, -1, 2.0, "3", True, None])
def test_invalid_counts_are_rejected(count):
    with pytest.raises(InvalidInstallmentCount):
        compute_installment(Decimal("100"), count)


@pytest.mark.parametrize("amount", [0, -10, "-0.01", "abc", "NaN", "Infinity", None, True])
def test_invalid_amounts_are_rejected(amount):
    with pytest.raises(InvalidAmount):
        compute_installment(amount, 1)


def test_option_metadata():
    assert get_option(3).has_interest is False
    assert get_option(3).monthly_rate == 0
    assert get_option(4).has_interest is True
    assert get_option(4).monthly_rate == Decimal("0.025")


def test_installment_options_lists_every_count():
    options = installment_options(Decimal("499.00"))
    assert [o.count for o in options] == list(INSTALLMENT_COUNTS)
    shown = options[-1].to_dict()
    assert shown["count"] == 12
    assert shown["has_interest"] is True
    assert shown["total"] == str(compute_installment(Decimal("499.00"), 12).rounded().total)


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("110.38128906")) == 11038
    assert to_cents(Decimal("0.005")) == 1
    assert to_cents(Decimal("49.90")) == 4990

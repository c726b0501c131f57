"""
Amortization Module

Fixed-rate, reducing-balance EMI arithmetic. Every value is a Decimal; the
monthly rate is carried at 10 fractional digits and the installment is rounded
half-up to the paisa/cent.

The constant installment is not reconciled on the last period. Paying the same
rounded amount every month leaves a small residual balance (positive or
negative) after the final installment; amortization_residual() measures it.
"""

from decimal import Decimal, ROUND_HALF_UP, Context, localcontext
from datetime import date
from typing import Union
import calendar

from .errors import ValidationError


CENT = Decimal("0.01")
RATE_SCALE = Decimal("0.0000000001")  # 10 fractional digits
MONTHS_PER_YEAR = Decimal("12")
PERCENT = Decimal("100")
MAX_PRINCIPAL = Decimal("9999999999999.99")  # 15 digits at scale 2
MAX_ANNUAL_RATE_PERCENT = Decimal("999.99")

_CONTEXT = Context(prec=28, rounding=ROUND_HALF_UP)

Number = Union[Decimal, int, str]


def to_decimal(value: Number, field: str) -> Decimal:
    """Coerce an int/str/Decimal to Decimal. Floats are refused."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a Decimal, int or numeric string",
                              {field: "unsupported numeric type"})
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except ArithmeticError:
            raise ValidationError(f"{field} is not a number", {field: "not a number"})
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", {field: "must be finite"})
    return result


def quantize_amount(amount: Decimal) -> Decimal:
    """Round a money amount half-up to two decimals"""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """annual% / 12 / 100, each step held at 10 fractional digits"""
    per_month = (annual_rate_percent / MONTHS_PER_YEAR).quantize(RATE_SCALE, rounding=ROUND_HALF_UP)
    return (per_month / PERCENT).quantize(RATE_SCALE, rounding=ROUND_HALF_UP)


def _validate(principal: Number, annual_rate_percent: Number, tenure_months: int):
    principal = to_decimal(principal, "principal")
    rate = to_decimal(annual_rate_percent, "annual_rate_percent")

    errors = {}
    if principal <= 0:
        errors["principal"] = "must be greater than zero"
    elif principal > MAX_PRINCIPAL:
        errors["principal"] = f"must not exceed {MAX_PRINCIPAL}"
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int):
        errors["tenure_months"] = "must be an integer"
    elif tenure_months < 1:
        errors["tenure_months"] = "must be at least 1"
    if rate < 0:
        errors["annual_rate_percent"] = "cannot be negative"
    elif rate > MAX_ANNUAL_RATE_PERCENT:
        errors["annual_rate_percent"] = f"must not exceed {MAX_ANNUAL_RATE_PERCENT}"

    if errors:
        raise ValidationError("Invalid amortization inputs", errors)
    return principal, rate


def compute_monthly_installment(principal: Number, annual_rate_percent: Number,
                                tenure_months: int) -> Decimal:
    """
    Calculate the equated monthly installment.

    Standard formula: P * r * (1+r)^n / ((1+r)^n - 1), where r is the monthly
    rate. A zero rate divides the principal evenly instead.

    Args:
        principal: Amount borrowed, > 0 and at most 15 digits at scale 2
        annual_rate_percent: Annual interest rate in percent, 0 to 999.99
        tenure_months: Number of monthly installments, >= 1

    Returns:
        Installment amount rounded half-up to 2 decimals

    Raises:
        ValidationError: If any input is out of range
    """
    principal, rate = _validate(principal, annual_rate_percent, tenure_months)

    try:
        with localcontext(_CONTEXT):
            r = monthly_rate(rate)
            if r == 0:
                return quantize_amount(principal / Decimal(tenure_months))

            factor = (Decimal("1") + r) ** tenure_months
            installment = principal * r * factor / (factor - Decimal("1"))
            return quantize_amount(installment)
    except ArithmeticError as e:
        raise ValidationError(
            "Loan terms cannot be amortized",
            {"tenure_months": "too large to amortize at this rate"}
        ) from e


def amortization_residual(principal: Number, annual_rate_percent: Number,
                          tenure_months: int, installment: Number) -> Decimal:
    """
    Balance left after paying `installment` every month for the full tenure.

    Interest accrues monthly on the reducing balance and is rounded to the
    cent each period. A negative result means the borrower overpays.
    """
    principal, rate = _validate(principal, annual_rate_percent, tenure_months)
    installment = to_decimal(installment, "installment")

    with localcontext(_CONTEXT):
        r = monthly_rate(rate)
        balance = principal
        for _ in range(tenure_months):
            interest = quantize_amount(balance * r)
            balance = balance + interest - installment
        return quantize_amount(balance)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)

"""
Pydantic schemas for loan application input
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


DEFAULT_MIN_LOAN_AMOUNT = Decimal("10000.00")
DEFAULT_MIN_TENURE_MONTHS = 6
DEFAULT_MAX_PURPOSE_LENGTH = 500


class LoanApplicationRequest(BaseModel):
    amount: Decimal = Field(..., max_digits=15, decimal_places=2, description="Principal, scale 2")
    tenure_months: int = Field(..., description="Loan duration in months")
    interest_rate: Decimal = Field(..., max_digits=5, decimal_places=2,
                                   description="Annual interest rate in percent")
    property_value: Optional[Decimal] = Field(None, max_digits=15, decimal_places=2, ge=0)
    purpose: str

    @field_validator("amount")
    @classmethod
    def _minimum_amount(cls, value: Decimal, info: ValidationInfo) -> Decimal:
        minimum = (info.context or {}).get("min_loan_amount", DEFAULT_MIN_LOAN_AMOUNT)
        if value < minimum:
            raise ValueError(f"Amount must be at least {minimum:,}")
        return value

    @field_validator("tenure_months")
    @classmethod
    def _minimum_tenure(cls, value: int, info: ValidationInfo) -> int:
        minimum = (info.context or {}).get("min_tenure_months", DEFAULT_MIN_TENURE_MONTHS)
        if value < minimum:
            raise ValueError(f"Tenure must be at least {minimum} months")
        return value

    @field_validator("interest_rate")
    @classmethod
    def _positive_rate(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("Interest rate must be positive")
        return value

    @field_validator("purpose")
    @classmethod
    def _purpose_present(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Purpose is required")
        limit = (info.context or {}).get("max_purpose_length", DEFAULT_MAX_PURPOSE_LENGTH)
        if len(value) > limit:
            raise ValueError(f"Purpose must be at most {limit} characters")
        return value


def parse_request(model: type, data: Dict[str, Any],
                  context: Optional[Dict[str, Any]] = None) -> BaseModel:
    """Validate input, converting pydantic errors to ValidationError with per-field messages"""
    try:
        return model.model_validate(data, context=context)
    except PydanticValidationError as e:
        field_errors = {}
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "request"
            field_errors.setdefault(field, error["msg"])
        raise ValidationError("Validation failed", field_errors) from e

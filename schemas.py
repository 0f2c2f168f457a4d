from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Frequency, MonthDayPolicy, TransactionType
from recurrence import calculate_next_date


class RecurringRuleIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    type: TransactionType
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    currency_code: str = Field(default="EUR", min_length=3, max_length=3)
    exchange_rate: Decimal = Field(default=Decimal("1"), gt=0)
    tags: list[str] = Field(default_factory=list)
    category_id: Optional[int] = None
    frequency: Frequency
    interval_count: int = Field(default=1, ge=1)
    start_date: date
    end_date: Optional[date] = None
    occurrences_limit: Optional[int] = Field(default=None, ge=2)
    month_day_policy: MonthDayPolicy = MonthDayPolicy.carry_forward

    @field_validator("currency_code")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        if not value.isalpha():
            raise ValueError("Currency code must be three letters")
        return value.upper()

    @field_validator("tags")
    @classmethod
    def _strip_tags(cls, value: list[str]) -> list[str]:
        return [tag.strip() for tag in value if tag and tag.strip()]

    @model_validator(mode="after")
    def _check_end_date(self) -> "RecurringRuleIn":
        if self.end_date is None:
            return self
        min_end = calculate_next_date(
            self.start_date, self.frequency, self.interval_count
        )
        if self.end_date <= min_end:
            raise ValueError(
                "End date must be later than one interval after the start date"
            )
        return self


class RecurringRuleUpdate(BaseModel):
    """Partial edit of a rule; fields left out keep their stored values."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    currency_code: Optional[str] = Field(default=None, min_length=3, max_length=3)
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    tags: Optional[list[str]] = None
    category_id: Optional[int] = None
    frequency: Optional[Frequency] = None
    interval_count: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    occurrences_limit: Optional[int] = Field(default=None, ge=2)
    month_day_policy: Optional[MonthDayPolicy] = None


class RunError(BaseModel):
    rule_id: int
    message: str


class RunSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    processed: int = 0
    generated: int = 0
    skipped: int = 0
    deactivated: int = 0
    errors: list[RunError] = Field(default_factory=list)


class ProcessResponse(RunSummary):
    message: str


class InteractiveRunResponse(RunSummary):
    toast: Optional[str] = None

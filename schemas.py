from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import ExpenseCategory, ExpenseStatus, TemplateStatus


class RecurringTemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    category: ExpenseCategory = ExpenseCategory.other
    due_day: int = Field(..., ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    status: TemplateStatus = TemplateStatus.active

    @model_validator(mode="after")
    def check_date_range(self) -> "RecurringTemplateIn":
        if self.end_date is not None and self.start_date > self.end_date:
            raise ValueError("Start date must be on or before end date")
        return self


class ExpenseIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    category: ExpenseCategory = ExpenseCategory.other
    due_date: date
    status: ExpenseStatus = ExpenseStatus.pending
    notes: Optional[str] = Field(default=None, max_length=500)


class CarryForwardIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    due_date: Optional[date] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)


class PaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=1)


class MaterializationOut(BaseModel):
    created: int
    skipped: int
    errors: list[int]
    coalesced: bool = False

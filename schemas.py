import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Frequency, TransactionType


class TransactionIn(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    date: date
    payment_method: Optional[str] = Field(default=None, max_length=50)
    location: Optional[str] = Field(default=None, max_length=200)
    is_fixed: bool = False


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    payment_method: Optional[str] = Field(default=None, max_length=50)
    location: Optional[str] = Field(default=None, max_length=200)
    is_fixed: Optional[bool] = None


class CSVImportIn(BaseModel):
    csv: str = Field(..., min_length=1)
    persist: bool = False


class CSVRow(BaseModel):
    date: date
    amount_cents: int = Field(..., gt=0)
    category: str
    description: Optional[str]
    payment_method: Optional[str] = None
    location: Optional[str] = None
    is_fixed: bool = False


class RecurringRuleIn(BaseModel):
    kind: TransactionType = TransactionType.income
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    start_date: date
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    occurrence_limit: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[dt.date] = None


class GenerateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    window_start: Optional[date] = Field(default=None, alias="from")
    window_end: Optional[date] = Field(default=None, alias="to")
    persist: bool = False

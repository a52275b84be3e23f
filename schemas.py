from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Generic, Optional, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from models import AuditAction

T = TypeVar("T")


def _not_in_future(value: date) -> date:
    if value > date.today():
        raise ValueError("Expense date cannot be in the future")
    return value


PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]
ExpenseDate = Annotated[date, AfterValidator(_not_in_future)]


class UserIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    display_name: Optional[str] = Field(default=None, max_length=100)


class CategoryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)


class ExpenseIn(BaseModel):
    category_id: int
    amount: PositiveAmount
    description: Optional[str] = Field(default=None, max_length=500)
    expense_date: ExpenseDate


class ExpenseUpdate(BaseModel):
    """Partial update: a field left as None keeps its stored value."""

    category_id: Optional[int] = None
    amount: Optional[PositiveAmount] = None
    description: Optional[str] = Field(default=None, max_length=500)
    expense_date: Optional[ExpenseDate] = None


class BudgetIn(BaseModel):
    amount: PositiveAmount
    year: int = Field(..., ge=1900, le=2100)
    # None is a yearly budget; the range is checked by BudgetService.
    month: Optional[int] = None
    category_ids: list[int] = Field(default_factory=list)


class BudgetUpdate(BaseModel):
    amount: Optional[PositiveAmount] = None
    year: Optional[int] = Field(default=None, ge=1900, le=2100)
    month: Optional[int] = None
    category_ids: Optional[list[int]] = None


class ExpenseListParams(BaseModel):
    category_id: Optional[int] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_amount: Optional[Decimal] = Field(default=None, ge=0)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    display_name: Optional[str]


class TokenOut(BaseModel):
    user: UserOut
    access_token: str
    token_type: str = "bearer"


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount: Decimal
    description: Optional[str]
    expense_date: date
    created_at: datetime


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: AuditAction
    details: Optional[str]
    created_at: datetime


class BudgetOut(BaseModel):
    id: int
    amount: Decimal
    year: int
    month: Optional[int]
    category_ids: list[int]
    total_spent: Decimal
    remaining: Decimal


class PageOut(BaseModel, Generic[T]):
    content: list[T]
    page_number: int
    page_size: int
    total_elements: int
    total_pages: int
    is_first: bool
    is_last: bool
    count_on_page: int


class ErrorOut(BaseModel):
    error_code: str
    message: str
    timestamp: datetime
    errors: Optional[dict[str, str]] = None

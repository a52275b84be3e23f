"""Dynamic expense queries: filter predicates, allow-listed sorting and paging.

Predicates wrap SQLAlchemy clauses so filters are pushed down to the database
and combine with ``&``. Everything is validated before the first statement is
sent, so a rejected request never touches the store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Generic, Optional, Sequence, TypeVar

from sqlalchemy import and_, func, select, true
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.sql.elements import ColumnElement

from errors import ValidationFailed
from models import Expense
from money import to_cents
from schemas import ExpenseListParams

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

SORTABLE_FIELDS = {
    "amount": Expense.amount_cents,
    "createdAt": Expense.created_at,
    "expenseDate": Expense.expense_date,
    "categoryId": Expense.category_id,
    "description": Expense.description,
}
SORT_ALIASES = {
    "created_at": "createdAt",
    "expense_date": "expenseDate",
    "category_id": "categoryId",
}
DEFAULT_SORT = ("expenseDate", "desc")


@dataclass(frozen=True)
class Predicate:
    clause: ColumnElement[bool]

    def __and__(self, other: "Predicate") -> "Predicate":
        return Predicate(and_(self.clause, other.clause))


MATCH_ALL = Predicate(true())


def owned_by(user_id: int) -> Predicate:
    return Predicate(Expense.user_id == user_id)


def not_deleted() -> Predicate:
    return Predicate(Expense.deleted_at.is_(None))


def in_category(category_id: int) -> Predicate:
    return Predicate(Expense.category_id == category_id)


def dated_between(start: Optional[date], end: Optional[date]) -> Predicate:
    predicate = MATCH_ALL
    if start is not None:
        predicate &= Predicate(Expense.expense_date >= start)
    if end is not None:
        predicate &= Predicate(Expense.expense_date <= end)
    return predicate


def amount_between(low: Optional[Decimal], high: Optional[Decimal]) -> Predicate:
    # Sub-cent bounds round inward so the range stays inclusive and exact.
    predicate = MATCH_ALL
    if low is not None:
        predicate &= Predicate(
            Expense.amount_cents >= to_cents(low, rounding=ROUND_CEILING)
        )
    if high is not None:
        predicate &= Predicate(
            Expense.amount_cents <= to_cents(high, rounding=ROUND_FLOOR)
        )
    return predicate


def validate_params(params: ExpenseListParams) -> None:
    errors: dict[str, str] = {}
    if params.from_date and params.to_date and params.from_date > params.to_date:
        errors["from_date"] = "fromDate must be on or before toDate"
    if (
        params.min_amount is not None
        and params.max_amount is not None
        and params.min_amount > params.max_amount
    ):
        errors["min_amount"] = "minAmount must be less than or equal to maxAmount"
    if errors:
        raise ValidationFailed(errors)


def build_predicate(user_id: int, params: ExpenseListParams) -> Predicate:
    predicate = owned_by(user_id) & not_deleted()
    if params.category_id is not None:
        predicate &= in_category(params.category_id)
    if params.from_date is not None or params.to_date is not None:
        predicate &= dated_between(params.from_date, params.to_date)
    if params.min_amount is not None or params.max_amount is not None:
        predicate &= amount_between(params.min_amount, params.max_amount)
    return predicate


def parse_sort(specs: Sequence[str]) -> list[ColumnElement]:
    """Turn ``["amount,asc", "expenseDate"]`` into ORDER BY clauses.

    Unknown fields or directions raise ``ValidationFailed``. Without any sort
    the order is ``expenseDate`` descending; ``id`` breaks ties.
    """
    parsed: list[tuple[str, str]] = []
    for raw in specs:
        if not raw or not raw.strip():
            continue
        parts = [p.strip() for p in raw.split(",")]
        name = SORT_ALIASES.get(parts[0], parts[0])
        if name not in SORTABLE_FIELDS:
            raise ValidationFailed.single("sort", f"Unsupported sort field: {parts[0]}")
        direction = parts[1].lower() if len(parts) > 1 and parts[1] else "asc"
        if direction not in ("asc", "desc") or len(parts) > 2:
            raise ValidationFailed.single("sort", f"Unsupported sort direction: {raw}")
        parsed.append((name, direction))
    if not parsed:
        parsed.append(DEFAULT_SORT)

    clauses = []
    for name, direction in parsed:
        column = SORTABLE_FIELDS[name]
        clauses.append(column.desc() if direction == "desc" else column.asc())
    clauses.append(Expense.id.desc())
    return clauses


def clamp_page(page: int, size: int) -> tuple[int, int]:
    page = max(page, 0)
    if size <= 0:
        size = DEFAULT_PAGE_SIZE
    return page, min(size, MAX_PAGE_SIZE)


@dataclass(frozen=True)
class Page(Generic[T]):
    content: list[T]
    page_number: int
    page_size: int
    total_elements: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_elements / self.page_size)

    @property
    def is_first(self) -> bool:
        return self.page_number == 0

    @property
    def is_last(self) -> bool:
        return self.page_number + 1 >= self.total_pages

    @property
    def count_on_page(self) -> int:
        return len(self.content)


class ExpenseQuery:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def page(
        self,
        params: ExpenseListParams,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
        sort: Sequence[str] = (),
    ) -> Page[Expense]:
        validate_params(params)
        order_by = parse_sort(sort)
        page, size = clamp_page(page, size)
        predicate = build_predicate(self.user_id, params)

        total = int(
            self.session.execute(
                select(func.count(Expense.id)).where(predicate.clause)
            ).scalar_one()
            or 0
        )
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(predicate.clause)
            .order_by(*order_by)
            .offset(page * size)
            .limit(size)
        )
        items = list(self.session.scalars(stmt).all())
        return Page(
            content=items, page_number=page, page_size=size, total_elements=total
        )

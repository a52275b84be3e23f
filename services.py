from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterator, Optional, Sequence, TypeVar

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    AccessDenied,
    BudgetExceeded,
    DuplicateBudget,
    ResourceNotFound,
    ValidationFailed,
)
from models import (
    AuditAction,
    Budget,
    Category,
    Expense,
    ExpenseAuditLog,
    User,
    budget_categories,
    utcnow,
)
from money import from_cents, to_cents
from periods import PeriodKey, is_valid_month
from queries import ExpenseQuery, Page
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    ExpenseIn,
    ExpenseListParams,
    ExpenseUpdate,
    UserIn,
)

logger = logging.getLogger(__name__)

Owned = TypeVar("Owned", Expense, Budget)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: UserIn) -> User:
        email = data.email.lower()
        taken = self.session.scalar(select(exists().where(User.email == email)))
        if taken:
            raise ValidationFailed.single("email", "Email already in use")
        user = User(email=email, display_name=data.display_name)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ResourceNotFound("User not found")
        return user


class OwnershipGuard:
    """Resolves ``(resource id, acting user)`` to an owned row in one lookup.

    Missing, foreign and soft-deleted rows all fail the same way, so callers
    cannot tell whether another user's resource exists.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def resolve_owned(
        self, model: type[Owned], resource_id: int, *, include_deleted: bool = False
    ) -> Owned:
        stmt = select(model).where(
            model.id == resource_id, model.user_id == self.user_id
        )
        if not include_deleted:
            stmt = stmt.where(model.deleted_at.is_(None))
        row = self.session.scalar(stmt)
        if row is None:
            noun = model.__tablename__.rstrip("s")
            raise AccessDenied(f"You are not allowed to access this {noun}")
        return row

    def expense(self, expense_id: int, *, include_deleted: bool = False) -> Expense:
        return self.resolve_owned(Expense, expense_id, include_deleted=include_deleted)

    def budget(self, budget_id: int, *, include_deleted: bool = False) -> Budget:
        return self.resolve_owned(Budget, budget_id, include_deleted=include_deleted)


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.archived_at.is_(None))
            .order_by(Category.name, Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id,
                Category.user_id == self.user_id,
                Category.archived_at.is_(None),
            )
        )
        if not category:
            raise ResourceNotFound("Category not found or access denied")
        return category

    resolve = get

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.name == name,
            Category.archived_at.is_(None),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        UserService(self.session).get(self.user_id)
        name = data.name.strip()
        if self._name_taken(name):
            raise ValidationFailed.single(
                "name", "A category with this name already exists"
            )
        category = Category(user_id=self.user_id, name=name)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if name != category.name and self._name_taken(name, exclude_id=category.id):
            raise ValidationFailed.single(
                "name", "A category with this name already exists"
            )
        category.name = name
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)

        used_by_expenses = self.session.scalar(
            select(
                exists().where(
                    Expense.category_id == category.id, Expense.deleted_at.is_(None)
                )
            )
        )
        if used_by_expenses:
            raise ValidationFailed.single(
                "category_id", "Cannot delete category: it is used by expenses"
            )
        used_by_budgets = self.session.scalar(
            select(
                exists()
                .where(budget_categories.c.category_id == category.id)
                .where(budget_categories.c.budget_id == Budget.id)
                .where(Budget.deleted_at.is_(None))
            )
        )
        if used_by_budgets:
            raise ValidationFailed.single(
                "category_id", "Cannot delete category: it is used by budgets"
            )

        has_history = self.session.scalar(
            select(exists().where(Expense.category_id == category.id))
        ) or self.session.scalar(
            select(exists().where(budget_categories.c.category_id == category.id))
        )
        if has_history:
            # Deleted expenses and budgets still point here.
            category.archived_at = utcnow()
        else:
            self.session.delete(category)
        self.session.commit()
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id} "
            f"archived={bool(has_history)}"
        )


# Lock stripes keyed by hash of (user, category, period).
_ENFORCER_LOCKS = [threading.Lock() for _ in range(64)]


class BudgetEnforcer:
    def __init__(
        self, session: Session, user_id: int, *, serialize: Optional[bool] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        if serialize is None:
            serialize = get_settings().serialize_budget_writes
        self.serialize = serialize

    @contextmanager
    def guard(self, category_id: int, period: PeriodKey) -> Iterator[None]:
        """Hold the (user, category, period) lock across check and commit."""
        if not self.serialize:
            yield
            return
        key = (self.user_id, category_id, period.year, period.month)
        with _ENFORCER_LOCKS[hash(key) % len(_ENFORCER_LOCKS)]:
            yield

    def spent(
        self,
        category_id: int,
        period: PeriodKey,
        *,
        exclude_expense_id: Optional[int] = None,
    ) -> Decimal:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.user_id == self.user_id,
            Expense.category_id == category_id,
            Expense.deleted_at.is_(None),
            Expense.expense_date.between(period.start, period.end),
        )
        if exclude_expense_id is not None:
            stmt = stmt.where(Expense.id != exclude_expense_id)
        return from_cents(self.session.execute(stmt).scalar_one())

    def budgets_covering(self, category_id: int, period: PeriodKey) -> list[Budget]:
        month_clause = (
            Budget.month.is_(None) if period.is_yearly else Budget.month == period.month
        )
        stmt = (
            select(Budget)
            .join(budget_categories, budget_categories.c.budget_id == Budget.id)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == period.year,
                month_clause,
                Budget.deleted_at.is_(None),
                budget_categories.c.category_id == category_id,
            )
        )
        return list(self.session.scalars(stmt).all())

    def check(
        self,
        category_id: int,
        amount: Decimal,
        expense_date: date,
        *,
        exclude_expense_id: Optional[int] = None,
    ) -> None:
        period = PeriodKey.for_date(expense_date)
        budgets = self.budgets_covering(category_id, period)
        if not budgets:
            return

        cap = sum((b.amount for b in budgets), Decimal("0.00"))
        already_spent = self.spent(
            category_id, period, exclude_expense_id=exclude_expense_id
        )
        projected = already_spent + amount
        if projected > cap:
            logger.info(
                f"budget_rejected: user_id={self.user_id} category_id={category_id} "
                f"period={period} projected={projected} cap={cap}"
            )
            raise BudgetExceeded("Expense exceeds remaining monthly budget")


def _audit_value(value: object) -> object:
    if isinstance(value, (Decimal, date)):
        return str(value)
    return value


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        enforcer: Optional[BudgetEnforcer] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)
        self.enforcer = enforcer or BudgetEnforcer(session, user_id)

    def _audit(
        self, expense: Expense, action: AuditAction, details: dict[str, object]
    ) -> None:
        entry = ExpenseAuditLog(
            expense_id=expense.id,
            user_id=self.user_id,
            action=action,
            details=json.dumps(
                {k: _audit_value(v) for k, v in details.items()}, sort_keys=True
            ),
        )
        self.session.add(entry)

    def create(self, data: ExpenseIn) -> Expense:
        UserService(self.session).get(self.user_id)
        category = CategoryService(self.session, self.user_id).resolve(
            data.category_id
        )
        period = PeriodKey.for_date(data.expense_date)

        with self.enforcer.guard(category.id, period):
            self.enforcer.check(category.id, data.amount, data.expense_date)
            expense = Expense(
                user_id=self.user_id,
                category_id=category.id,
                amount_cents=to_cents(data.amount),
                description=data.description,
                expense_date=data.expense_date,
            )
            self.session.add(expense)
            self.session.flush()
            self._audit(
                expense,
                AuditAction.created,
                {
                    "category_id": category.id,
                    "amount": data.amount,
                    "description": data.description,
                    "expense_date": data.expense_date,
                },
            )
            self.session.commit()

        self.session.refresh(expense)
        logger.info(
            f"expense_created: user_id={self.user_id} expense_id={expense.id} "
            f"period={period}"
        )
        return expense

    def get(self, expense_id: int) -> Expense:
        return self.guard.expense(expense_id)

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.guard.expense(expense_id)

        category_id = expense.category_id
        if data.category_id is not None and data.category_id != expense.category_id:
            category_id = (
                CategoryService(self.session, self.user_id)
                .resolve(data.category_id)
                .id
            )
        amount = data.amount if data.amount is not None else expense.amount
        description = (
            data.description if data.description is not None else expense.description
        )
        expense_date = data.expense_date or expense.expense_date

        # Checked before the row is modified; a rejection leaves the session clean.
        with self.enforcer.guard(category_id, PeriodKey.for_date(expense_date)):
            self.enforcer.check(
                category_id, amount, expense_date, exclude_expense_id=expense.id
            )

            before = {
                "category_id": expense.category_id,
                "amount": expense.amount,
                "description": expense.description,
                "expense_date": expense.expense_date,
            }
            after = {
                "category_id": category_id,
                "amount": amount,
                "description": description,
                "expense_date": expense_date,
            }
            changes = {
                field: {"from": _audit_value(before[field]), "to": _audit_value(value)}
                for field, value in after.items()
                if before[field] != value
            }

            expense.category_id = category_id
            expense.amount_cents = to_cents(amount)
            expense.description = description
            expense.expense_date = expense_date
            if changes:
                self._audit(expense, AuditAction.updated, changes)
            self.session.commit()

        self.session.refresh(expense)
        logger.info(
            f"expense_updated: user_id={self.user_id} expense_id={expense.id} "
            f"fields={sorted(changes)}"
        )
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.guard.expense(expense_id, include_deleted=True)
        if not expense.mark_deleted():
            return
        self._audit(
            expense, AuditAction.deleted, {"deleted_at": expense.deleted_at.isoformat()}
        )
        self.session.commit()
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense.id}")

    def list_all(self) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id, Expense.deleted_at.is_(None))
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
        )
        return self.session.scalars(stmt).all()

    def list_page(
        self,
        params: ExpenseListParams,
        page: int = 0,
        size: int = 10,
        sort: Sequence[str] = (),
    ) -> Page[Expense]:
        return ExpenseQuery(self.session, self.user_id).page(params, page, size, sort)

    def history(self, expense_id: int) -> list[ExpenseAuditLog]:
        expense = self.guard.expense(expense_id)
        stmt = (
            select(ExpenseAuditLog)
            .where(ExpenseAuditLog.expense_id == expense.id)
            .order_by(ExpenseAuditLog.id)
        )
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class BudgetMetrics:
    total_spent: Decimal
    remaining: Decimal


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = OwnershipGuard(session, user_id)

    @staticmethod
    def _validate_month(month: Optional[int]) -> None:
        if not is_valid_month(month):
            raise ValidationFailed.single("month", "Month must be between 1 and 12")

    def _ensure_unique(self, period: PeriodKey, exclude_id: Optional[int] = None) -> None:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.year == period.year,
            Budget.month.is_(None) if period.is_yearly else Budget.month == period.month,
            Budget.deleted_at.is_(None),
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateBudget("A budget already exists for this user, year and month")

    def _commit_period(self) -> None:
        # The live-period index catches writers that raced past _ensure_unique.
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateBudget(
                "A budget already exists for this user, year and month"
            ) from exc

    def _resolve_categories(self, category_ids: Sequence[int]) -> list[Category]:
        categories = CategoryService(self.session, self.user_id)
        resolved: list[Category] = []
        seen: set[int] = set()
        for category_id in category_ids:
            if category_id in seen:
                continue
            seen.add(category_id)
            try:
                resolved.append(categories.resolve(category_id))
            except ResourceNotFound as exc:
                raise ResourceNotFound(
                    f"Category not found or access denied: {category_id}"
                ) from exc
        return resolved

    def create(self, data: BudgetIn) -> Budget:
        UserService(self.session).get(self.user_id)
        self._validate_month(data.month)
        self._ensure_unique(PeriodKey(data.year, data.month))
        categories = self._resolve_categories(data.category_ids)

        budget = Budget(
            user_id=self.user_id,
            amount_cents=to_cents(data.amount),
            year=data.year,
            month=data.month,
            categories=categories,
        )
        self.session.add(budget)
        self._commit_period()
        self.session.refresh(budget)
        logger.info(
            f"budget_created: user_id={self.user_id} budget_id={budget.id} "
            f"period={PeriodKey(budget.year, budget.month)}"
        )
        return budget

    def get(self, budget_id: int) -> Budget:
        return self.guard.budget(budget_id)

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.guard.budget(budget_id)

        year = data.year if data.year is not None else budget.year
        month = data.month if data.month is not None else budget.month
        self._validate_month(month)
        if (year, month) != (budget.year, budget.month):
            self._ensure_unique(PeriodKey(year, month), exclude_id=budget.id)

        categories = None
        if data.category_ids is not None:
            categories = self._resolve_categories(data.category_ids)

        if data.amount is not None:
            budget.amount_cents = to_cents(data.amount)
        budget.year = year
        budget.month = month
        if categories is not None:
            budget.categories = categories
        self._commit_period()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.guard.budget(budget_id, include_deleted=True)
        if budget.mark_deleted():
            self.session.commit()
            logger.info(f"budget_deleted: user_id={self.user_id} budget_id={budget.id}")

    def list_for_period(self, year: int, month: Optional[int] = None) -> list[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.year == year,
            Budget.deleted_at.is_(None),
        )
        if month is not None:
            self._validate_month(month)
            stmt = stmt.where(Budget.month == month)
        stmt = stmt.order_by(Budget.month.is_not(None), Budget.month, Budget.id)
        return self.session.scalars(stmt).all()

    def metrics(self, budget: Budget) -> BudgetMetrics:
        category_ids = budget.category_ids
        total_spent = Decimal("0.00")
        if category_ids:
            period = PeriodKey(budget.year, budget.month)
            spent_cents = self.session.execute(
                select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                    Expense.user_id == budget.user_id,
                    Expense.deleted_at.is_(None),
                    Expense.expense_date.between(period.start, period.end),
                    Expense.category_id.in_(category_ids),
                )
            ).scalar_one()
            total_spent = from_cents(spent_cents)
        remaining = max(Decimal("0.00"), budget.amount - total_spent)
        return BudgetMetrics(total_spent=total_spent, remaining=remaining)

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import from_cents


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class Deleted:
    at: datetime


Lifecycle = Union[Active, Deleted]


class AuditAction(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class SoftDeleteMixin:
    """Soft-delete state lives in ``deleted_at`` alone; ``lifecycle`` is the typed view."""

    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def lifecycle(self) -> Lifecycle:
        if self.deleted_at is None:
            return Active()
        return Deleted(self.deleted_at)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_deleted(self, at: Optional[datetime] = None) -> bool:
        """Move to Deleted. Returns False when already deleted (timestamp kept)."""
        if isinstance(self.lifecycle, Deleted):
            return False
        self.deleted_at = at or utcnow()
        return True


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100))


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Set when a category is removed but still referenced by deleted history.
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )


budget_categories = Table(
    "budget_categories",
    Base.metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
)


class Expense(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")
    audit_entries: Mapped[list["ExpenseAuditLog"]] = relationship(
        "ExpenseAuditLog",
        back_populates="expense",
        order_by="ExpenseAuditLog.id",
    )

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "expense_date"),
        Index(
            "ix_expenses_user_category_date", "user_id", "category_id", "expense_date"
        ),
        CheckConstraint("amount_cents > 0", name="amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class Budget(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL means a yearly budget.
    month: Mapped[Optional[int]] = mapped_column(Integer)

    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary=budget_categories, lazy="selectin"
    )

    __table_args__ = (
        Index("ix_budgets_user_year_month", "user_id", "year", "month"),
        CheckConstraint("amount_cents > 0", name="amount_positive"),
        CheckConstraint(
            "month IS NULL OR (month >= 1 AND month <= 12)", name="month_range"
        ),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def category_ids(self) -> set[int]:
        return {c.id for c in self.categories}


class ExpenseAuditLog(Base):
    __tablename__ = "expense_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    expense_id: Mapped[int] = mapped_column(ForeignKey("expenses.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    action: Mapped[AuditAction] = mapped_column(SAEnum(AuditAction), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    expense: Mapped["Expense"] = relationship(
        "Expense", back_populates="audit_entries"
    )


# One live category name per user; archived rows keep their old names.
Index(
    "uq_categories_user_name_live",
    Category.user_id,
    Category.name,
    unique=True,
    sqlite_where=Category.archived_at.is_(None),
    postgresql_where=Category.archived_at.is_(None),
)

# One live budget per (user, year, month); a NULL month is its own period key.
Index(
    "uq_budgets_user_period_live",
    Budget.user_id,
    Budget.year,
    func.coalesce(Budget.month, 0),
    unique=True,
    sqlite_where=Budget.deleted_at.is_(None),
    postgresql_where=Budget.deleted_at.is_(None),
)

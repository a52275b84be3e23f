import json
from datetime import date, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import BigInteger, create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import AccessDenied, ErrorKind, ResourceNotFound
from models import Active, AuditAction, Budget, Deleted, Expense
from schemas import CategoryIn, ExpenseIn, ExpenseListParams, ExpenseUpdate, UserIn
from services import CategoryService, ExpenseService, UserService


def _user_with_category(session: Session, email: str) -> tuple[int, int]:
    user_id = UserService(session).register(UserIn(email=email)).id
    category = CategoryService(session, user_id).create(CategoryIn(name="Food"))
    return user_id, category.id


def test_create_requires_owned_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ana, ana_food = _user_with_category(session, "ana@example.com")
        ben, _ = _user_with_category(session, "ben@example.com")

        with pytest.raises(ResourceNotFound) as excinfo:
            ExpenseService(session, ben).create(
                ExpenseIn(
                    category_id=ana_food,
                    amount=Decimal("3.20"),
                    expense_date=date(2025, 1, 2),
                )
            )
        assert excinfo.value.kind is ErrorKind.resource_not_found


def test_unknown_user_cannot_record_expenses() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ResourceNotFound):
            ExpenseService(session, 404).create(
                ExpenseIn(category_id=1, amount=Decimal("1"), expense_date=date(2025, 1, 2))
            )


def test_foreign_expense_is_access_denied() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ana, food = _user_with_category(session, "ana@example.com")
        ben, _ = _user_with_category(session, "ben@example.com")
        expense = ExpenseService(session, ana).create(
            ExpenseIn(category_id=food, amount=Decimal("9.99"), expense_date=date(2025, 1, 2))
        )
        intruder = ExpenseService(session, ben)

        with pytest.raises(AccessDenied):
            intruder.get(expense.id)
        with pytest.raises(AccessDenied):
            intruder.update(expense.id, ExpenseUpdate(description="mine now"))
        with pytest.raises(AccessDenied):
            intruder.delete(expense.id)
        with pytest.raises(AccessDenied):
            intruder.get(expense.id + 1000)
        assert intruder.list_all() == []
        assert intruder.list_page(ExpenseListParams()).total_elements == 0

        assert ExpenseService(session, ana).get(expense.id).deleted_at is None


def test_delete_is_soft_and_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ana, food = _user_with_category(session, "ana@example.com")
        expenses = ExpenseService(session, ana)
        expense = expenses.create(
            ExpenseIn(category_id=food, amount=Decimal("20"), expense_date=date(2025, 1, 2))
        )
        assert isinstance(expense.lifecycle, Active)

        expenses.delete(expense.id)
        first_deleted_at = session.get(Expense, expense.id).deleted_at
        expenses.delete(expense.id)

        row = session.get(Expense, expense.id)
        assert row is not None
        assert row.deleted_at == first_deleted_at
        assert row.lifecycle == Deleted(first_deleted_at)
        assert row.is_deleted

        with pytest.raises(AccessDenied):
            expenses.get(expense.id)
        with pytest.raises(AccessDenied):
            expenses.update(expense.id, ExpenseUpdate(amount=Decimal("1")))
        assert expenses.list_all() == []

        deleted_count = (
            session.query(Expense).filter(Expense.deleted_at.isnot(None)).count()
        )
        assert deleted_count == 1


def test_partial_update_keeps_absent_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ana, food = _user_with_category(session, "ana@example.com")
        expenses = ExpenseService(session, ana)
        expense = expenses.create(
            ExpenseIn(
                category_id=food,
                amount=Decimal("20"),
                description="Lunch",
                expense_date=date(2025, 1, 2),
            )
        )

        updated = expenses.update(expense.id, ExpenseUpdate(description="Dinner"))

        assert updated.description == "Dinner"
        assert updated.amount == Decimal("20.00")
        assert updated.category_id == food
        assert updated.expense_date == date(2025, 1, 2)


def test_history_records_each_change() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ana, food = _user_with_category(session, "ana@example.com")
        expenses = ExpenseService(session, ana)
        expense = expenses.create(
            ExpenseIn(category_id=food, amount=Decimal("20"), expense_date=date(2025, 1, 2))
        )
        expenses.update(expense.id, ExpenseUpdate(amount=Decimal("25.50")))
        # Nothing changed, nothing logged.
        expenses.update(expense.id, ExpenseUpdate(amount=Decimal("25.50")))

        history = expenses.history(expense.id)

        assert [entry.action for entry in history] == [
            AuditAction.created,
            AuditAction.updated,
        ]
        changes = json.loads(history[1].details)
        assert changes == {"amount": {"from": "20.00", "to": "25.50"}}


def test_expense_input_rejects_non_positive_amounts_and_future_dates() -> None:
    with pytest.raises(ValidationError):
        ExpenseIn(category_id=1, amount=Decimal("0"), expense_date=date(2025, 1, 2))
    with pytest.raises(ValidationError):
        ExpenseIn(category_id=1, amount=Decimal("-5"), expense_date=date(2025, 1, 2))
    with pytest.raises(ValidationError):
        ExpenseIn(
            category_id=1,
            amount=Decimal("5"),
            expense_date=date.today() + timedelta(days=1),
        )


def test_large_amounts_are_stored_as_big_integers() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    assert isinstance(Expense.__table__.c.amount_cents.type, BigInteger)
    assert isinstance(Budget.__table__.c.amount_cents.type, BigInteger)

    with Session(engine) as session:
        ana, food = _user_with_category(session, "ana@example.com")
        expense = ExpenseService(session, ana).create(
            ExpenseIn(
                category_id=food,
                amount=Decimal("9999999999.99"),
                expense_date=date(2025, 1, 2),
            )
        )

        assert expense.amount_cents == 999_999_999_999
        assert ExpenseService(session, ana).get(expense.id).amount == Decimal(
            "9999999999.99"
        )

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_access_token
from database import Base, get_db
from main import app


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        engine.dispose()


def _register(client: TestClient, email: str) -> dict[str, str]:
    resp = client.post("/users", json={"email": email})
    assert resp.status_code == 201
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def test_requests_without_token_are_unauthorized(client: TestClient) -> None:
    resp = client.get("/expenses")
    assert resp.status_code == 401
    assert resp.json()["error_code"] == "UNAUTHORIZED"

    resp = client.get("/expenses", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


def test_budget_scenario_over_http(client: TestClient) -> None:
    headers = _register(client, "ana@example.com")
    food = client.post("/categories", json={"name": "Food"}, headers=headers).json()
    budget = client.post(
        "/budgets",
        json={"amount": "1000", "year": 2025, "month": 3, "category_ids": [food["id"]]},
        headers=headers,
    )
    assert budget.status_code == 201
    budget_id = budget.json()["id"]

    first = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "400", "expense_date": "2025-03-05"},
        headers=headers,
    )
    assert first.status_code == 201
    remaining = client.get(f"/budgets/{budget_id}", headers=headers).json()["remaining"]
    assert Decimal(str(remaining)) == Decimal("600")

    rejected = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "650", "expense_date": "2025-03-20"},
        headers=headers,
    )
    assert rejected.status_code == 422
    body = rejected.json()
    assert body["error_code"] == "BUDGET_EXCEEDED"
    assert "timestamp" in body

    assert client.delete(f"/expenses/{first.json()['id']}", headers=headers).status_code == 204
    retried = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "650", "expense_date": "2025-03-20"},
        headers=headers,
    )
    assert retried.status_code == 201


def test_error_kinds_map_to_distinct_statuses(client: TestClient) -> None:
    ana = _register(client, "ana@example.com")
    ben = _register(client, "ben@example.com")
    food = client.post("/categories", json={"name": "Food"}, headers=ana).json()
    expense = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "12.30", "expense_date": "2025-01-02"},
        headers=ana,
    ).json()

    denied = client.get(f"/expenses/{expense['id']}", headers=ben)
    assert denied.status_code == 403
    assert denied.json()["error_code"] == "ACCESS_DENIED"
    assert str(expense["id"]) not in denied.json()["message"]

    missing = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "1", "expense_date": "2025-01-02"},
        headers=ben,
    )
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "RESOURCE_NOT_FOUND"

    client.post("/budgets", json={"amount": "5", "year": 2025, "month": 1}, headers=ana)
    duplicate = client.post(
        "/budgets", json={"amount": "5", "year": 2025, "month": 1}, headers=ana
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error_code"] == "DUPLICATE_BUDGET"

    bad_sort = client.get("/expenses?sort=user.password,asc", headers=ana)
    assert bad_sort.status_code == 400
    assert bad_sort.json()["error_code"] == "VALIDATION_ERROR"
    assert "sort" in bad_sort.json()["errors"]


def test_validation_errors_report_every_field(client: TestClient) -> None:
    headers = _register(client, "ana@example.com")

    resp = client.post(
        "/expenses",
        json={"category_id": 1, "amount": "-3", "expense_date": "2999-01-01"},
        headers=headers,
    )
    assert resp.status_code == 400
    errors = resp.json()["errors"]
    assert {"amount", "expense_date"} <= set(errors)

    resp = client.get(
        "/expenses?fromDate=2025-02-01&toDate=2025-01-01&minAmount=9&maxAmount=1",
        headers=headers,
    )
    assert resp.status_code == 400
    assert set(resp.json()["errors"]) == {"from_date", "min_amount"}


def test_paged_listing_metadata(client: TestClient) -> None:
    headers = _register(client, "ana@example.com")
    food = client.post("/categories", json={"name": "Food"}, headers=headers).json()
    for day in range(1, 26):
        client.post(
            "/expenses",
            json={
                "category_id": food["id"],
                "amount": "1.50",
                "expense_date": f"2025-01-{day:02d}",
            },
            headers=headers,
        )

    body = client.get("/expenses?page=2&size=10", headers=headers).json()

    assert body["count_on_page"] == 5
    assert body["total_pages"] == 3
    assert body["total_elements"] == 25
    assert body["is_last"] is True
    assert len(body["content"]) == 5


def test_expense_history_endpoint(client: TestClient) -> None:
    headers = _register(client, "ana@example.com")
    food = client.post("/categories", json={"name": "Food"}, headers=headers).json()
    expense = client.post(
        "/expenses",
        json={"category_id": food["id"], "amount": "8", "expense_date": "2025-01-02"},
        headers=headers,
    ).json()
    client.put(
        f"/expenses/{expense['id']}", json={"description": "Tea"}, headers=headers
    )

    history = client.get(f"/expenses/{expense['id']}/history", headers=headers).json()

    assert [entry["action"] for entry in history] == ["created", "updated"]


def test_me_returns_registered_user(client: TestClient) -> None:
    headers = _register(client, "Ana@Example.com")

    resp = client.get("/users/me", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["email"] == "ana@example.com"


def test_token_for_unknown_user_is_not_found(client: TestClient) -> None:
    headers = {"Authorization": f"Bearer {issue_access_token(9999)}"}

    resp = client.get("/users/me", headers=headers)

    assert resp.status_code == 404
    assert resp.json()["error_code"] == "RESOURCE_NOT_FOUND"


def test_unexpected_errors_are_generic() -> None:
    def broken_db():
        raise RuntimeError("connection string leaked: postgres://secret")
        yield

    app.dependency_overrides[get_db] = broken_db
    try:
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get(
            "/categories",
            headers={"Authorization": f"Bearer {issue_access_token(1)}"},
        )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json()["error_code"] == "INTERNAL_ERROR"
    assert "secret" not in resp.text

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
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
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_fund(client: TestClient, name: str, cents: int) -> int:
    resp = client.post(
        "/funds",
        json={"name": name, "initial_balance_cents": cents, "start_date": "2025-01-01"},
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def fund_balance(client: TestClient, fund_id: int) -> int:
    return client.get(f"/funds/{fund_id}").json()["current_balance_cents"]


def test_expense_lifecycle_over_http(client: TestClient) -> None:
    a = make_fund(client, "A", 100_000)
    b = make_fund(client, "B", 50_000)
    category = client.post("/categories", json={"name": "Moves"}).json()

    resp = client.post(
        "/expenses",
        json={
            "category_id": category["id"],
            "date": "2025-03-01",
            "amount_cents": 20_000,
            "description": "Top up savings",
            "source_fund_id": a,
            "destination_fund_id": b,
        },
    )
    assert resp.status_code == 201
    expense = resp.json()
    assert expense["warnings"]
    assert fund_balance(client, a) == 80_000
    assert fund_balance(client, b) == 70_000

    resp = client.patch(
        f"/expenses/{expense['id']}",
        json={"amount_cents": 30_000, "destination_fund_id": None},
    )
    assert resp.status_code == 200
    assert resp.json()["destination_fund_id"] is None
    assert fund_balance(client, a) == 70_000
    assert fund_balance(client, b) == 50_000

    resp = client.delete(f"/expenses/{expense['id']}")
    assert resp.status_code == 200
    assert resp.json()["amount_cents"] == 30_000
    assert fund_balance(client, a) == 100_000
    assert client.get(f"/expenses/{expense['id']}").status_code == 404
    assert client.delete(f"/expenses/{expense['id']}").status_code == 404


def test_rejected_update_returns_details(client: TestClient) -> None:
    a = make_fund(client, "A", 10_000)
    b = make_fund(client, "B", 10_000)
    c = make_fund(client, "C", 10_000)
    category = client.post(
        "/categories", json={"name": "Food", "fund_ids": [a, b]}
    ).json()
    assert category["fund_ids"] == sorted([a, b])
    expense = client.post(
        "/expenses",
        json={
            "category_id": category["id"],
            "date": "2025-03-01",
            "amount_cents": 1_000,
            "description": "Lunch",
            "source_fund_id": a,
        },
    ).json()

    resp = client.patch(f"/expenses/{expense['id']}", json={"source_fund_id": c})

    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert "not associated" in detail["details"][0]
    assert fund_balance(client, a) == 9_000
    assert fund_balance(client, c) == 10_000
    assert client.get(f"/expenses/{expense['id']}").json()["source_fund_id"] == a


def test_missing_category_is_not_found(client: TestClient) -> None:
    a = make_fund(client, "A", 10_000)
    resp = client.post(
        "/expenses",
        json={
            "category_id": 42,
            "date": "2025-03-01",
            "amount_cents": 1_000,
            "description": "Ghost",
            "source_fund_id": a,
        },
    )
    assert resp.status_code == 404


def test_validate_source_fund_endpoint(client: TestClient) -> None:
    a = make_fund(client, "A", 10_000)
    b = make_fund(client, "B", 10_000)
    category = client.post(
        "/categories", json={"name": "Food", "fund_ids": [a]}
    ).json()

    ok = client.post(
        "/expenses/validate-source-fund",
        json={"category_id": category["id"], "source_fund_id": a, "amount_cents": 500},
    ).json()
    assert ok["is_valid"] is True

    bad = client.post(
        "/expenses/validate-source-fund",
        json={"category_id": category["id"], "source_fund_id": b},
    ).json()
    assert bad["is_valid"] is False
    assert bad["errors"]

    options = client.get(f"/categories/{category['id']}/source-funds").json()
    assert options["has_restrictions"] is True
    assert [f["id"] for f in options["funds"]] == [a]


def test_category_funds_and_fund_delete(client: TestClient) -> None:
    a = make_fund(client, "A", 0)
    b = make_fund(client, "B", 0)
    category = client.post("/categories", json={"name": "Bills"}).json()

    resp = client.put(f"/categories/{category['id']}/funds", json={"fund_ids": [a, b]})
    assert [f["id"] for f in resp.json()] == [a, b]
    assert len(client.get(f"/categories/{category['id']}/funds").json()) == 2

    expense = client.post(
        "/expenses",
        json={
            "category_id": category["id"],
            "date": "2025-03-01",
            "amount_cents": 700,
            "description": "Power",
            "source_fund_id": b,
        },
    ).json()
    assert client.delete(f"/funds/{b}").status_code == 409
    assert client.delete(f"/funds/{a}").status_code == 204
    assert client.get(f"/funds/{a}").status_code == 404

    listed = client.get(f"/funds/{b}/expenses").json()
    assert [e["id"] for e in listed] == [expense["id"]]


def test_recalculate_and_audit(client: TestClient) -> None:
    a = make_fund(client, "A", 5_000)
    resp = client.post(f"/funds/{a}/recalculate")
    assert resp.status_code == 200
    assert resp.json()["new_balance_cents"] == 5_000
    assert client.get("/audit").json() == []
    assert client.post("/funds/999/recalculate").status_code == 404


def test_duplicate_fund_name_conflicts(client: TestClient) -> None:
    make_fund(client, "Main", 0)
    resp = client.post("/funds", json={"name": "main", "start_date": "2025-01-01"})
    assert resp.status_code == 409


def test_category_rename_and_fund_links(client: TestClient) -> None:
    a = make_fund(client, "A", 0)
    b = make_fund(client, "B", 0)
    category = client.post("/categories", json={"name": "Food"}).json()
    client.post("/categories", json={"name": "Rent"})

    resp = client.patch(f"/categories/{category['id']}", json={"name": "Groceries"})
    assert resp.json()["name"] == "Groceries"
    resp = client.patch(f"/categories/{category['id']}", json={"name": "rent"})
    assert resp.status_code == 409

    resp = client.post(f"/categories/{category['id']}/funds/{a}")
    assert [f["id"] for f in resp.json()] == [a]
    resp = client.post(f"/categories/{category['id']}/funds/{b}")
    assert [f["id"] for f in resp.json()] == [a, b]
    resp = client.delete(f"/categories/{category['id']}/funds/{a}")
    assert [f["id"] for f in resp.json()] == [b]
    assert client.post(f"/categories/{category['id']}/funds/999").status_code == 404

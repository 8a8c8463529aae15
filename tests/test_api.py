import os

import pytest
from fastapi.testclient import TestClient

from config import settings

HEADERS = {"X-API-Key": settings.api_key}
CSV_TEXT = "Library export\nGenerated\n\ncode,title\nA0001,Cat\nA0002,Cat\nB0001,Dog\n"


@pytest.fixture
def client(tmp_path, request):
    # Per-test DB; the lifespan reads LIBRARY_DB_FILE when the app starts
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    os.environ["LIBRARY_DB_FILE"] = db_file

    import api as api_module

    try:
        with TestClient(api_module.app) as test_client:
            yield test_client
    finally:
        os.environ.pop("LIBRARY_DB_FILE", None)
        if os.path.exists(db_file):
            os.remove(db_file)


@pytest.fixture
def admin_client(client):
    response = client.post("/session", headers=HEADERS, json={"username": "admin", "role": "staff"})
    assert response.status_code == 200
    assert response.json()["is_admin"] is True
    return client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["db"] is True
    assert data["total_books"] == 0
    assert data["sync"]["enabled"] is False


def test_get_books_empty(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_invalid_api_key(admin_client):
    response = admin_client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"code": "A0001", "title": "Cat"})
    assert response.status_code == 403


def test_add_book_requires_admin_session(client):
    client.post("/session", headers=HEADERS, json={"username": "alice", "role": "student"})
    response = client.post("/books", headers=HEADERS, json={"code": "A0001", "title": "Cat"})
    assert response.status_code == 403


def test_add_and_get_book(admin_client):
    response = admin_client.post("/books", headers=HEADERS, json={"code": "a0001", "title": "Cat", "copies": 2})
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "A0001"
    assert body["genre"] == "繪本"
    assert body["available_copies"] == 2

    response = admin_client.get("/books/A0001")
    assert response.status_code == 200
    assert response.json()["title"] == "Cat"

    assert admin_client.get("/books/A0404").status_code == 404


def test_add_book_without_code_uses_next_code(admin_client):
    admin_client.post("/books", headers=HEADERS, json={"code": "B0004", "title": "Dog"})
    response = admin_client.post("/books", headers=HEADERS, json={"title": "Puppy", "genre": "橋梁書"})
    assert response.json()["id"] == "B0005"

    response = admin_client.get("/books/next-code", params={"genre": "橋梁書"})
    assert response.json() == {"code": "B0006"}


def test_add_book_errors(admin_client):
    response = admin_client.post("/books", headers=HEADERS, json={"code": "X1", "title": "Cat"})
    assert response.status_code == 400

    admin_client.post("/books", headers=HEADERS, json={"code": "A0001", "title": "Cat"})
    response = admin_client.post("/books", headers=HEADERS, json={"code": "A0001", "title": "Dog"})
    assert response.status_code == 409
    assert "already exists" in response.json()["detail"]


def test_update_and_delete_book(admin_client):
    admin_client.post("/books", headers=HEADERS, json={"code": "C0001", "title": "Tree"})

    response = admin_client.put("/books/C0001", headers=HEADERS, json={"title": "Big Tree", "copies": 2})
    assert response.status_code == 200
    assert response.json()["copies"] == 2

    assert admin_client.put("/books/C0001", headers=HEADERS, json={}).status_code == 400

    response = admin_client.delete("/books/C0001", headers=HEADERS)
    assert response.status_code == 200
    assert admin_client.delete("/books/C0001", headers=HEADERS).status_code == 404


def test_search_books(admin_client):
    admin_client.post("/import/csv", headers=HEADERS, json={"text": CSV_TEXT})

    response = admin_client.get("/books", params={"q": "A0002"})
    assert [b["id"] for b in response.json()] == ["A0001"]
    assert response.json()[0]["book_ids"] == ["A0001", "A0002"]

    assert admin_client.get("/books", params={"sort_by": "author"}).status_code == 400


def test_loan_flow(admin_client):
    admin_client.post("/books", headers=HEADERS, json={"code": "A0001", "title": "Cat"})

    response = admin_client.post("/loans", headers=HEADERS, json={"code": "A0001"})
    assert response.status_code == 200
    loan = response.json()
    assert loan["user_id"] == "admin"
    assert loan["returned_at"] is None

    response = admin_client.post("/loans", headers=HEADERS, json={"code": "A0001"})
    assert response.status_code == 409

    assert len(admin_client.get("/loans").json()) == 1
    assert admin_client.delete("/books/A0001", headers=HEADERS).status_code == 409

    response = admin_client.post(f"/loans/{loan['id']}/return", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["returned_at"].endswith("Z")
    assert admin_client.post(f"/loans/{loan['id']}/return", headers=HEADERS).status_code == 409
    assert admin_client.post("/loans/404/return", headers=HEADERS).status_code == 404


def test_borrow_requires_session(client):
    response = client.post("/loans", headers=HEADERS, json={"code": "A0001"})
    assert response.status_code == 403


def test_import_and_stats(admin_client):
    response = admin_client.post("/import/csv", headers=HEADERS, json={"text": CSV_TEXT + "bad,Row\n"})
    assert response.status_code == 200
    assert response.json()["success_count"] == 3
    assert response.json()["error_count"] == 1

    response = admin_client.post("/import/rows", headers=HEADERS, json={"rows": [
        ["code", "title", "copies"],
        ["C0001", "Tree", "2"],
        ["A0001", "Again", None],
    ]})
    assert response.json()["success_count"] == 1
    assert response.json()["errors"] == ["Row 3: book code already in catalog (A0001)"]

    response = admin_client.get("/stats")
    assert response.json() == {
        "total_books": 5,
        "unique_titles": 3,
        "available_books": 5,
        "borrowed_books": 0,
    }


def test_settings(admin_client):
    response = admin_client.put("/settings", headers=HEADERS, json={"loan_days": 21, "guest_borrow": True})
    assert response.status_code == 200
    assert response.json()["loan_days"] == 21
    assert admin_client.get("/settings").json()["guest_borrow"] is True

    assert admin_client.put("/settings", headers=HEADERS, json={"loan_days": 0}).status_code == 422


def test_session_endpoints(client):
    assert client.get("/session").json()["username"] is None

    client.post("/session", headers=HEADERS, json={"username": "bob", "role": "staff"})
    session = client.get("/session").json()
    assert session == {"username": "bob", "role": "staff", "is_admin": False}

    assert client.post("/session", headers=HEADERS, json={"username": "bob", "role": "wizard"}).status_code == 400

    client.delete("/session", headers=HEADERS)
    assert client.get("/session").json()["username"] is None


def test_sync_endpoints_without_remote(admin_client):
    assert admin_client.post("/sync/push", headers=HEADERS).json() == {"pushed": False}
    response = admin_client.post("/sync/pull", headers=HEADERS)
    assert response.json()["reason"] == "disabled"

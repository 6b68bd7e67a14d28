from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from loguru import logger

from school_library.api.deps import get_clock, get_unit_of_work
from school_library.main import app, generic_exception_handler

API = "/api/v1"


@pytest.fixture
def client(uow, clock):
    app.dependency_overrides[get_unit_of_work] = lambda: uow
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_book(client, **overrides):
    payload = {"title": "Matilda", "authors": ["Roald Dahl"], "total_copies": 1}
    payload.update(overrides)
    response = client.post(f"{API}/books", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def create_member(client, user_id="user-1", **overrides):
    payload = {"user_id": user_id, "role": "STUDENT", "first_name": "Kit", "email": "kit@greenfield-school.org"}
    payload.update(overrides)
    response = client.post(f"{API}/members", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def borrow(client, member_id, book_id, **extra):
    payload = {"member_id": member_id, "book_id": book_id, "borrow_days": 7}
    payload.update(extra)
    return client.post(f"{API}/borrowings", json=payload)


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    response = client.get("/health/db")
    assert response.status_code == 200
    assert response.json()["status"] == "success"


def test_book_crud(client):
    book = create_book(client, isbn="978-0142410370")

    assert client.get(f"{API}/books/{book['id']}").json()["available_copies"] == 1

    patched = client.patch(f"{API}/books/{book['id']}", json={"total_copies": 3})
    assert patched.status_code == 200
    assert patched.json()["available_copies"] == 3

    nulled = client.patch(f"{API}/books/{book['id']}", json={"total_copies": None})
    assert nulled.status_code == 422
    assert client.get(f"{API}/books/{book['id']}").json()["total_copies"] == 3

    flagged = client.put(f"{API}/books/{book['id']}/status", json={"status": "RESERVED"})
    assert flagged.json()["status"] == "RESERVED"

    listing = client.get(f"{API}/books", params={"status": "RESERVED"})
    assert listing.json()["total"] == 1

    assert client.delete(f"{API}/books/{book['id']}").status_code == 204
    missing = client.get(f"{API}/books/{book['id']}")
    assert missing.status_code == 404
    assert "not found" in missing.json()["detail"]


def test_member_endpoints(client):
    member = create_member(client)
    assert member["member_code"] == "MBR-000001"

    duplicate = client.post(f"{API}/members", json={"user_id": "user-1", "role": "TEACHER"})
    assert duplicate.status_code == 409

    suspended = client.put(f"{API}/members/{member['id']}/status", json={"status": "SUSPENDED"})
    assert suspended.json()["status"] == "SUSPENDED"

    stats = client.get(f"{API}/members/statistics").json()
    assert stats["suspended_members"] == 1

    bad_email = client.post(f"{API}/members", json={"user_id": "user-2", "role": "STUDENT", "email": "nope"})
    assert bad_email.status_code == 422

    cleared_limit = client.patch(f"{API}/members/{member['id']}", json={"max_borrow_limit": None})
    assert cleared_limit.status_code == 422


def test_borrow_return_cycle_with_fine(client, clock):
    book = create_book(client)
    member = create_member(client)

    issued = borrow(client, member["id"], book["id"])
    assert issued.status_code == 201
    record = issued.json()
    assert record["status"] == "ISSUED"

    second = borrow(client, create_member(client, user_id="user-2")["id"], book["id"])
    assert second.status_code == 409
    assert second.json()["detail"] == "Book is not available for borrowing."

    clock.advance(days=10)
    returned = client.post(f"{API}/borrowings/{record['id']}/return", json={"returned_to": "desk"})
    assert returned.status_code == 200
    assert returned.json()["fine_amount"] == 3
    assert returned.json()["days_overdue"] == 3

    again = client.post(f"{API}/borrowings/{record['id']}/return")
    assert again.status_code == 409

    member = client.get(f"{API}/members/{member['id']}").json()
    assert member["fine_amount"] == 3
    assert member["current_borrow_count"] == 0


def test_borrow_validation_errors(client, clock):
    book = create_book(client)
    member = create_member(client)

    missing_due = client.post(f"{API}/borrowings", json={"member_id": member["id"], "book_id": book["id"]})
    assert missing_due.status_code == 422

    past_due = borrow(
        client, member["id"], book["id"],
        borrow_days=None, due_date=(clock.now() - timedelta(days=1)).isoformat(),
    )
    assert past_due.status_code == 409

    too_long = borrow(client, member["id"], book["id"], borrow_days=500)
    assert too_long.status_code == 422

    unknown = borrow(client, "000000000000000000000000", book["id"])
    assert unknown.status_code == 404


def test_renew_lost_and_damaged(client):
    book = create_book(client, total_copies=2)
    member = create_member(client)
    first = borrow(client, member["id"], book["id"]).json()
    second = borrow(client, member["id"], book["id"]).json()

    renewed = client.put(f"{API}/borrowings/{first['id']}/renew")
    assert renewed.status_code == 200
    assert renewed.json()["renewal_count"] == 1
    assert renewed.json()["original_due_date"] is not None

    lost = client.put(f"{API}/borrowings/{first['id']}/lost", json={"notes": "Lost on trip"})
    assert lost.json()["status"] == "LOST"
    assert lost.json()["fine_amount"] == 25

    blank = client.put(f"{API}/borrowings/{second['id']}/damaged", json={"damage_description": "  "})
    assert blank.status_code == 422

    damaged = client.put(f"{API}/borrowings/{second['id']}/damaged", json={"damage_description": "Torn cover"})
    assert damaged.json()["status"] == "DAMAGED"

    assert client.get(f"{API}/members/{member['id']}").json()["fine_amount"] == 40
    assert client.get(f"{API}/books/{book['id']}").json()["available_copies"] == 0


def test_ledger_reads_and_reports(client, clock):
    book = create_book(client, total_copies=2)
    member = create_member(client)
    record = borrow(client, member["id"], book["id"], borrow_days=3).json()

    clock.advance(days=5)
    assert [r["id"] for r in client.get(f"{API}/reports/overdue").json()] == [record["id"]]

    sweep = client.post(f"{API}/reports/overdue-sweep")
    assert sweep.status_code == 200
    assert sweep.json() == {"scanned": 1, "marked": 1, "skipped": 0, "failed": 0}

    overdue_page = client.get(f"{API}/borrowings", params={"status": "OVERDUE"}).json()
    assert overdue_page["total"] == 1
    assert len(client.get(f"{API}/borrowings/member/{member['id']}").json()) == 1
    assert len(client.get(f"{API}/borrowings/book/{book['id']}").json()) == 1
    assert client.get(f"{API}/borrowings/{record['id']}").json()["status"] == "OVERDUE"

    stats = client.get(f"{API}/reports/statistics").json()
    assert stats["total_borrows"] == 1
    assert stats["total_overdue"] == 1
    assert stats["total_fines"] == 2

    history = client.get(f"{API}/reports/member/{member['id']}/history").json()
    assert history == [{"status": "OVERDUE", "count": 1, "total_fines": 2.0, "average_days_overdue": 2.0}]

    assert client.get(f"{API}/borrowings/member/000000000000000000000000").status_code == 404


def test_concurrency_conflict_is_marked_retryable(client, uow, monkeypatch):
    book = create_book(client)
    member = create_member(client)

    async def lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(uow.books, "take_copy", lost_race)
    response = borrow(client, member["id"], book["id"])

    assert response.status_code == 409
    assert response.json()["retryable"] is True
    assert client.get(f"{API}/borrowings").json()["total"] == 0


async def test_unhandled_error_is_logged_with_traceback():
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="ERROR")
    try:
        try:
            raise RuntimeError("disk full")
        except RuntimeError as exc:
            response = await generic_exception_handler(None, exc)
    finally:
        logger.remove(sink_id)

    assert response.status_code == 500
    assert records[0]["exception"].type is RuntimeError
    assert records[0]["exception"].traceback is not None

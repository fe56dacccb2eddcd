"""
HTTP tests for library_service.app through the Flask test client.
"""
import pytest

from library_service.seed import upsert_book

ALICE = "alice@example.com"


def headers(email=ALICE):
    return {"X-User-Email": email}


def post(client, path, body, email=ALICE):
    return client.post(path, json=body, headers=headers(email) if email else {})


@pytest.fixture
def catalog(db):
    entries = [
        {
            "isbn": "978-1",
            "title": "Dune",
            "authors": ["Frank Herbert"],
            "genres": ["Science Fiction"],
            "prices": {"sell": 20, "stock": 10, "borrow": 2},
            "copies": 4,
        },
        {
            "isbn": "978-2",
            "title": "Good Omens",
            "authors": ["Terry Pratchett", "Neil Gaiman"],
            "genres": ["Fantasy", "Comedy"],
            "prices": {"sell": 15, "stock": 8, "borrow": 1.5},
            "copies": 3,
        },
        {
            "isbn": "978-3",
            "title": "Neuromancer",
            "authors": ["William Gibson"],
            "genres": ["Science Fiction", "Cyberpunk"],
            "prices": {"sell": 18, "stock": 9, "borrow": 2},
            "copies": 2,
        },
    ]
    ids = {}
    with db.transaction() as session:
        for entry in entries:
            ids[entry["title"]] = upsert_book(session, entry).id
    return ids


def test_health(client):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


# =============================================================================
# User actions
# =============================================================================


class TestUserActions:
    def test_missing_header_is_rejected(self, client, make_book):
        book_id = make_book()

        resp = post(client, "/api/user/borrow", {"bookId": book_id}, email=None)

        assert resp.status_code == 400
        assert resp.get_json() == {
            "ok": False,
            "error": {"code": "BAD_REQUEST", "message": "x-user-email header is required"},
        }

    def test_borrow_returns_due_date(self, client, make_book):
        book_id = make_book(copies_available=5, borrow="4.00")

        resp = post(client, "/api/user/borrow", {"bookId": book_id})

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["ok"] is True
        assert body["data"]["dueAt"] == "2024-03-04T09:00:00"
        assert body["data"]["copiesAvailable"] == 4

    def test_header_email_is_normalized(self, client, make_book):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id}, email="  Alice@Example.COM ")

        resp = client.get(f"/api/admin/users/{ALICE}/books")

        assert len(resp.get_json()["data"]["borrowed"]) == 1

    def test_borrow_invalid_book_id(self, client):
        resp = post(client, "/api/user/borrow", {"bookId": "abc"})

        assert resp.status_code == 400
        assert resp.get_json()["error"]["message"] == "Valid bookId positive integer is required"

    def test_malformed_json_body_is_a_bad_request(self, client):
        resp = client.post(
            "/api/user/borrow",
            data="{not json",
            headers={**headers(), "Content-Type": "application/json"},
        )

        assert resp.status_code == 400

    def test_borrow_unknown_book(self, client):
        resp = post(client, "/api/user/borrow", {"bookId": 999})

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "NOT_FOUND"

    def test_borrow_conflict(self, client, make_book):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id})

        resp = post(client, "/api/user/borrow", {"bookId": book_id})

        assert resp.status_code == 409
        assert resp.get_json()["error"] == {
            "code": "CONFLICT",
            "message": "You already borrowed this book",
        }

    def test_buy_defaults_to_one_copy(self, client, make_book):
        book_id = make_book(copies_available=5, sell="12.50")

        resp = post(client, "/api/user/buy", {"bookId": book_id})

        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"quantity": 1, "total": 12.5, "copiesAvailable": 4}

    def test_buy_rejects_bad_quantity(self, client, make_book):
        book_id = make_book()

        resp = post(client, "/api/user/buy", {"bookId": book_id, "quantity": 0})

        assert resp.status_code == 400
        assert resp.get_json()["error"]["message"] == "quantity must be a positive integer"

    def test_return_flow(self, client, make_book, timers):
        book_id = make_book(copies_available=3)
        post(client, "/api/user/borrow", {"bookId": book_id})
        reminder = timers.last()

        resp = post(client, "/api/user/return", {"bookId": book_id})

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["copiesAvailable"] == 3
        assert data["returnedAt"] == "2024-03-01T09:00:00"
        assert reminder.cancelled

    def test_return_unknown_user(self, client, make_book):
        book_id = make_book()

        resp = post(client, "/api/user/return", {"bookId": book_id}, email="ghost@example.com")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["message"] == "User not found"


# =============================================================================
# Admin reporting
# =============================================================================


class TestBookSearch:
    def test_empty_query_lists_all_by_title(self, client, catalog):
        resp = client.get("/api/admin/books/search")

        body = resp.get_json()
        assert [b["title"] for b in body["data"]] == ["Dune", "Good Omens", "Neuromancer"]
        assert body["meta"] == {"page": 1, "pageSize": 20, "total": 3, "totalPages": 1, "q": None}

    def test_matches_genre_case_insensitively(self, client, catalog):
        resp = client.get("/api/admin/books/search?q=science")

        assert [b["title"] for b in resp.get_json()["data"]] == ["Dune", "Neuromancer"]

    def test_matches_author(self, client, catalog):
        resp = client.get("/api/admin/books/search?q=gaiman")

        [book] = resp.get_json()["data"]
        assert book["title"] == "Good Omens"
        assert book["authors"] == ["Terry Pratchett", "Neil Gaiman"]
        assert sorted(book["genres"]) == ["Comedy", "Fantasy"]
        assert book["prices"] == {"sell": 15.0, "stock": 8.0, "borrow": 1.5}

    def test_paging_is_clamped(self, client, catalog):
        resp = client.get("/api/admin/books/search?page=2&pageSize=2")

        body = resp.get_json()
        assert [b["title"] for b in body["data"]] == ["Neuromancer"]
        assert body["meta"]["totalPages"] == 2

        resp = client.get("/api/admin/books/search?page=-4&pageSize=1000")
        assert resp.get_json()["meta"]["page"] == 1
        assert resp.get_json()["meta"]["pageSize"] == 100


class TestBookActions:
    def test_lists_newest_first_with_user(self, client, make_book, clock):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id})
        clock.advance(60)
        post(client, "/api/user/buy", {"bookId": book_id}, email="bob@example.com")

        resp = client.get(f"/api/admin/books/{book_id}/actions")

        data = resp.get_json()["data"]
        assert [a["type"] for a in data["items"]] == ["BUY", "BORROW"]
        assert data["items"][1]["userEmail"] == ALICE
        assert data["items"][1]["dueAt"] == "2024-03-04T09:00:00"
        assert data["total"] == 2

    def test_filters_by_type_and_user(self, client, make_book):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id})
        post(client, "/api/user/buy", {"bookId": book_id}, email="bob@example.com")
        post(client, "/api/user/buy", {"bookId": book_id})

        resp = client.get(f"/api/admin/books/{book_id}/actions?type=BUY,bogus&userEmail=ALICE")

        items = resp.get_json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["type"] == "BUY"
        assert items[0]["userEmail"] == ALICE

    def test_filters_by_date_range(self, client, make_book):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id})

        inside = client.get(
            f"/api/admin/books/{book_id}/actions?from=2024-03-01T00:00:00Z&to=2024-03-02"
        )
        outside = client.get(f"/api/admin/books/{book_id}/actions?to=2024-02-01")

        assert inside.get_json()["data"]["total"] == 1
        assert outside.get_json()["data"]["total"] == 0

    def test_invalid_date(self, client, make_book):
        book_id = make_book()

        resp = client.get(f"/api/admin/books/{book_id}/actions?from=yesterday")

        assert resp.status_code == 400

    @pytest.mark.parametrize("book_id", ["abc", "0", "-3"])
    def test_invalid_book_id(self, client, book_id):
        resp = client.get(f"/api/admin/books/{book_id}/actions")

        assert resp.status_code == 400
        assert resp.get_json()["error"]["message"] == "Invalid bookId"


class TestWallet:
    def test_wallet_summary(self, client):
        resp = client.get("/api/admin/wallet")

        assert resp.get_json()["data"] == {"balance": 100.0, "milestoneNotifiedAt": None}

    def test_movements_follow_activity(self, client, make_book):
        book_id = make_book(sell="30.00", borrow="4.00")
        post(client, "/api/user/borrow", {"bookId": book_id})
        post(client, "/api/user/buy", {"bookId": book_id}, email="bob@example.com")

        resp = client.get("/api/admin/wallet/movements?type=SELL_REVENUE,BORROW_REVENUE")

        data = resp.get_json()["data"]
        assert {m["type"] for m in data["items"]} == {"SELL_REVENUE", "BORROW_REVENUE"}
        assert all(m["direction"] == "CREDIT" for m in data["items"])
        assert all(m["book"]["id"] == book_id for m in data["items"])
        assert client.get("/api/admin/wallet").get_json()["data"]["balance"] == 134.0

    def test_adjustment(self, client):
        resp = client.post("/api/admin/wallet/adjustments", json={"amount": -30, "note": "Petty cash"})

        assert resp.status_code == 201
        assert resp.get_json()["data"] == {"direction": "DEBIT", "amount": 30.0, "balance": 70.0}

        movements = client.get("/api/admin/wallet/movements?type=ADJUSTMENT").get_json()["data"]
        assert movements["items"][0]["note"] == "Petty cash"
        assert movements["total"] == 2

    def test_adjustment_requires_amount(self, client):
        resp = client.post("/api/admin/wallet/adjustments", json={"note": "nothing"})

        assert resp.status_code == 400
        assert resp.get_json()["error"]["message"] == "amount is required"


class TestUsers:
    def test_user_books(self, client, make_book):
        first = make_book(sell="10.00")
        second = make_book()
        post(client, "/api/user/buy", {"bookId": first, "quantity": 2})
        post(client, "/api/user/borrow", {"bookId": second})
        post(client, "/api/user/return", {"bookId": second})

        resp = client.get(f"/api/admin/users/{ALICE}/books")

        data = resp.get_json()["data"]
        [borrowed] = data["borrowed"]
        assert borrowed["status"] == "RETURNED"
        assert borrowed["book"]["id"] == second
        [bought] = data["bought"]
        assert bought["quantity"] == 2
        assert bought["total"] == 20.0

    def test_unknown_user_has_no_books(self, client):
        resp = client.get("/api/admin/users/nobody@example.com/books")

        assert resp.get_json()["data"] == {"borrowed": [], "bought": []}

    def test_list_users(self, client, make_book):
        book_id = make_book()
        post(client, "/api/user/borrow", {"bookId": book_id})
        post(client, "/api/user/buy", {"bookId": book_id}, email="bob@example.com")

        resp = client.get("/api/admin/user/all")

        assert [u["email"] for u in resp.get_json()["data"]] == [ALICE, "bob@example.com"]


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/nope")

    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "NOT_FOUND"

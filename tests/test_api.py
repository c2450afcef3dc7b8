import pytest
from fastapi.testclient import TestClient

from lending.api import create_app
from lending.models import MembershipType


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email="reader@example.com", password="secret123", headers=None, **extra):
    payload = {"email": email, "firstName": "Ada", "lastName": "Reader", "password": password}
    payload.update(extra)
    return client.post("/register", json=payload, headers=headers)


# ------------------------- Health & plumbing ------------------------- #
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["database"] == "connected"
    assert "timestamp" in body


def test_unknown_route(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


def test_cors_allows_frontend_origin(client):
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    other = client.get("/health", headers={"Origin": "http://evil.example"})
    assert "access-control-allow-origin" not in other.headers


def test_oversized_body_rejected(test_settings, db):
    app = create_app(test_settings.override(max_body_size=100), db)
    with TestClient(app) as small_client:
        response = small_client.post("/login", json={"email": "a@example.com", "password": "x" * 500})
    assert response.status_code == 413
    assert response.json() == {"error": "Request body too large"}


def test_unexpected_errors_do_not_leak(test_settings, db):
    app = create_app(test_settings, db)

    def explode(*args, **kwargs):
        raise RuntimeError("database file is on fire")

    app.state.catalog.list_books = explode
    with TestClient(app, raise_server_exceptions=False) as failing_client:
        response = failing_client.get("/books")
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
    assert "fire" not in response.text


# ------------------------- Auth ------------------------- #
def test_register_returns_201_and_token(client):
    response = register(client, phone="555-0100")
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "User registered successfully"
    assert body["user"]["email"] == "reader@example.com"
    assert body["user"]["membershipType"] == "STANDARD"

    profile = client.get("/profile", headers=auth(body["token"]))
    assert profile.status_code == 200
    assert profile.json()["user"]["phone"] == "555-0100"


def test_register_duplicate_email(client):
    assert register(client).status_code == 201
    response = register(client, email="Reader@Example.com")
    assert response.status_code == 409
    assert response.json() == {"error": "User with this email already exists"}


@pytest.mark.parametrize(
    "override, field",
    [
        ({"email": "not-an-email"}, "email"),
        ({"firstName": "A"}, "firstName"),
        ({"password": "123"}, "password"),
        ({"membershipType": "ADMIN"}, "membershipType"),
        ({"nickname": "ada"}, "nickname"),
    ],
)
def test_register_validation_errors(client, override, field):
    response = register(client, **override)
    assert response.status_code == 400
    assert response.json()["error"].startswith(f"{field}:")


def test_register_missing_body(client):
    response = client.post("/register")
    assert response.status_code == 400
    assert "error" in response.json()


def test_register_is_rate_limited(test_settings, db):
    app = create_app(test_settings.override(register_rate_limit=2), db)
    with TestClient(app) as limited:
        assert register(limited, email="one@example.com").status_code == 201
        assert register(limited, email="two@example.com").status_code == 201
        response = register(limited, email="three@example.com")
    assert response.status_code == 429
    assert "Too many accounts" in response.json()["error"]
    assert "retry-after" in response.headers


def test_login_is_rate_limited(test_settings, db):
    app = create_app(test_settings.override(login_rate_limit=1), db)
    with TestClient(app) as limited:
        limited.post("/login", json={"email": "x@example.com", "password": "whatever"})
        response = limited.post("/login", json={"email": "x@example.com", "password": "whatever"})
    assert response.status_code == 429


def test_login(client):
    register(client)
    ok = client.post("/login", json={"email": "reader@example.com", "password": "secret123"})
    assert ok.status_code == 200
    assert ok.json()["user"]["firstName"] == "Ada"
    assert client.get("/profile", headers=auth(ok.json()["token"])).status_code == 200

    bad = client.post("/login", json={"email": "reader@example.com", "password": "wrong-one"})
    assert bad.status_code == 401
    assert bad.json() == {"error": "Invalid credentials"}


def test_profile_requires_token(client):
    response = client.get("/profile")
    assert response.status_code == 401
    assert response.json() == {"error": "Access token required"}


def test_profile_rejects_bad_token(client):
    response = client.get("/profile", headers=auth("garbage"))
    assert response.status_code == 401


# ------------------------- Catalog ------------------------- #
def test_list_books_with_pagination(client, books):
    response = client.get("/books", params={"limit": 3})
    assert response.status_code == 200
    body = response.json()
    assert [b["title"] for b in body["books"]] == ["1984", "A Brief History of Time", "Animal Farm"]
    assert body["pagination"] == {"total": 4, "page": 1, "limit": 3, "totalPages": 2}


def test_search_books(client, books):
    body = client.get("/books", params={"search": "orwell"}).json()
    assert body["pagination"]["total"] == 3
    for book in body["books"]:
        text = f"{book['title']} {book['author']} {book['description'] or ''}".lower()
        assert "orwell" in text


@pytest.mark.parametrize("params", [{"page": 0}, {"limit": 0}, {"limit": 1000}, {"page": "x"}])
def test_list_books_bad_paging(client, params):
    response = client.get("/books", params=params)
    assert response.status_code == 400
    assert "error" in response.json()


def test_get_book(client, books):
    response = client.get(f"/books/{books['1984'].id}")
    assert response.status_code == 200
    body = response.json()
    assert body["isbn"] == "978-0451524935"
    assert body["borrowRecords"] == []


def test_get_book_errors(client):
    assert client.get("/books/abc").json() == {"error": "Invalid book ID"}
    assert client.get("/books/abc").status_code == 400
    missing = client.get("/books/999")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Book not found"}


# ------------------------- Borrowing ------------------------- #
def test_borrow_requires_token(client, books):
    response = client.post("/borrow", json={"userId": 1, "bookId": books["1984"].id})
    assert response.status_code == 401


def test_borrow_and_return(client, books, make_user):
    user, token = make_user()
    response = client.post("/borrow", json={"userId": user.id, "bookId": books["1984"].id}, headers=auth(token))
    assert response.status_code == 201
    record = response.json()["borrowRecord"]
    assert record["status"] == "ACTIVE"
    assert client.get(f"/books/{books['1984'].id}").json()["availableCopies"] == 0

    returned = client.post("/return", json={"borrowId": record["borrowId"]}, headers=auth(token))
    assert returned.status_code == 200
    assert returned.json()["fine"] == "No fine"
    assert returned.json()["borrowRecord"]["returnedAt"] is not None

    again = client.post("/return", json={"borrowId": record["borrowId"]}, headers=auth(token))
    assert again.status_code == 400
    assert again.json() == {"error": "Book already returned"}


def test_borrow_with_due_date(client, books, make_user):
    user, token = make_user()
    response = client.post(
        "/borrow",
        json={"userId": user.id, "bookId": books["1984"].id, "dueDate": "2030-05-01T12:00:00Z"},
        headers=auth(token),
    )
    assert response.status_code == 201
    assert response.json()["borrowRecord"]["dueDate"].startswith("2030-05-01T12:00:00")


def test_borrow_validation(client, make_user):
    user, token = make_user()
    response = client.post("/borrow", json={"userId": user.id, "bookId": -1}, headers=auth(token))
    assert response.status_code == 400
    assert response.json()["error"].startswith("bookId:")


def test_borrow_unknown_book(client, make_user):
    user, token = make_user()
    response = client.post("/borrow", json={"userId": user.id, "bookId": 999}, headers=auth(token))
    assert response.status_code == 404


def test_borrow_duplicate_active(client, books, make_user):
    user, token = make_user()
    body = {"userId": user.id, "bookId": books["animal_farm"].id}
    assert client.post("/borrow", json=body, headers=auth(token)).status_code == 201
    response = client.post("/borrow", json=body, headers=auth(token))
    assert response.status_code == 400
    assert response.json() == {"error": "User already has this book borrowed"}


def test_member_cannot_borrow_for_someone_else(client, books, make_user):
    user, token = make_user()
    other, _ = make_user()
    response = client.post("/borrow", json={"userId": other.id, "bookId": books["1984"].id}, headers=auth(token))
    assert response.status_code == 403


def test_staff_can_borrow_for_member(client, books, make_user):
    member, _ = make_user()
    _, staff_token = make_user(MembershipType.STAFF)
    response = client.post(
        "/borrow", json={"userId": member.id, "bookId": books["1984"].id}, headers=auth(staff_token)
    )
    assert response.status_code == 201
    assert response.json()["borrowRecord"]["userId"] == member.id


def test_member_cannot_return_someone_elses_loan(client, books, make_user):
    owner, owner_token = make_user()
    _, other_token = make_user()
    record = client.post(
        "/borrow", json={"userId": owner.id, "bookId": books["1984"].id}, headers=auth(owner_token)
    ).json()["borrowRecord"]

    response = client.post("/return", json={"borrowId": record["borrowId"]}, headers=auth(other_token))
    assert response.status_code == 403


def test_return_unknown_record(client, make_user):
    _, token = make_user()
    response = client.post("/return", json={"borrowId": 12345}, headers=auth(token))
    assert response.status_code == 404
    assert response.json() == {"error": "Borrow record not found"}


def test_return_requires_borrow_id(client, make_user):
    _, token = make_user()
    response = client.post("/return", json={}, headers=auth(token))
    assert response.status_code == 400
    assert response.json()["error"].startswith("borrowId:")


# ------------------------- History ------------------------- #
def test_my_borrows_self_only(client, books, make_user):
    user, token = make_user()
    other, _ = make_user()
    client.post("/borrow", json={"userId": user.id, "bookId": books["1984"].id}, headers=auth(token))

    own = client.get(f"/my-borrows/{user.id}", headers=auth(token))
    assert own.status_code == 200
    body = own.json()
    assert body["pagination"] == {"total": 1, "page": 1, "limit": 10, "totalPages": 1}
    assert body["borrowRecords"][0]["book"]["title"] == "1984"

    forbidden = client.get(f"/my-borrows/{other.id}", headers=auth(token))
    assert forbidden.status_code == 403
    assert forbidden.json() == {"error": "Access denied"}


def test_staff_can_read_any_history(client, books, make_user):
    member, member_token = make_user()
    _, admin_token = make_user(MembershipType.ADMIN)
    client.post("/borrow", json={"userId": member.id, "bookId": books["1984"].id}, headers=auth(member_token))

    response = client.get(f"/my-borrows/{member.id}", params={"status": "active"}, headers=auth(admin_token))
    assert response.status_code == 200
    assert response.json()["pagination"]["total"] == 1


def test_my_borrows_bad_input(client, make_user):
    user, token = make_user()
    assert client.get("/my-borrows/abc", headers=auth(token)).status_code == 400
    bad_status = client.get(f"/my-borrows/{user.id}", params={"status": "lost"}, headers=auth(token))
    assert bad_status.status_code == 400


# ------------------------- Hardening ------------------------- #
def test_forwarded_header_does_not_reset_rate_limit(test_settings, db):
    app = create_app(test_settings.override(register_rate_limit=2), db)
    with TestClient(app) as limited:
        codes = [
            register(limited, email=f"user{i}@example.com", headers={"X-Forwarded-For": f"10.0.0.{i}"}).status_code
            for i in range(4)
        ]
    assert codes == [201, 201, 429, 429]


def test_forwarded_header_used_behind_trusted_proxy(test_settings, db):
    app = create_app(test_settings.override(register_rate_limit=1, trust_proxy=True), db)
    with TestClient(app) as proxied:
        first = register(proxied, email="one@example.com", headers={"X-Forwarded-For": "10.0.0.1"})
        second = register(proxied, email="two@example.com", headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"})
        again = register(proxied, email="three@example.com", headers={"X-Forwarded-For": "10.0.0.1"})
    assert (first.status_code, second.status_code, again.status_code) == (201, 201, 429)


def test_chunked_body_without_length_rejected(client):
    def chunks():
        yield b'{"email": "a@example.com", '
        yield b'"password": "secret123"}'

    response = client.post("/login", content=chunks(), headers={"Content-Type": "application/json"})
    assert response.status_code == 411
    assert response.json() == {"error": "Content-Length required"}


def test_borrow_with_past_due_date_is_accepted(client, books, make_user):
    user, token = make_user()
    response = client.post(
        "/borrow",
        json={"userId": user.id, "bookId": books["1984"].id, "dueDate": "2020-01-01T00:00:00Z"},
        headers=auth(token),
    )
    assert response.status_code == 201
    record = response.json()["borrowRecord"]
    assert record["dueDate"].startswith("2020-01-01T00:00:00")
    assert record["status"] == "OVERDUE"


HUGE = 10**19


@pytest.mark.parametrize(
    "method, path, kwargs, error",
    [
        ("get", "/books", {"params": {"page": HUGE}}, "page:"),
        ("get", "/books", {"params": {"page": 2**62}}, "page:"),
        ("get", f"/books/{HUGE}", {}, "Invalid book ID"),
        ("post", "/borrow", {"json": {"userId": 1, "bookId": HUGE}}, "bookId:"),
        ("post", "/borrow", {"json": {"userId": HUGE, "bookId": 1}}, "userId:"),
        ("post", "/return", {"json": {"borrowId": HUGE}}, "borrowId:"),
        ("get", f"/my-borrows/{HUGE}", {}, "Invalid user ID"),
    ],
)
def test_out_of_range_integers_rejected(client, make_user, method, path, kwargs, error):
    _, token = make_user()
    response = getattr(client, method)(path, headers=auth(token), **kwargs)
    assert response.status_code == 400
    assert response.json()["error"].startswith(error)


def test_my_borrows_page_out_of_range(client, make_user):
    user, token = make_user()
    for page in (HUGE, 2**62):
        response = client.get(f"/my-borrows/{user.id}", params={"page": page}, headers=auth(token))
        assert response.status_code == 400
        assert response.json()["error"].startswith("page:")

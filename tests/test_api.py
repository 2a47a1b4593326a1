from datetime import datetime, timedelta, timezone

from library_api import crud
from library_api.auth import create_access_token
from library_api.models import CardStatus, LoanStatus, UserRole


def register_payload(email="new.reader@example.com"):
    return {"email": email, "firstName": "New", "lastName": "Reader", "password": "s3cretpass"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# Auth


def test_register(client, free_card):
    response = client.post("/api/auth/register", json=register_payload())
    assert response.status_code == 201
    data = response.json()
    assert data["accessToken"]
    assert data["user"]["email"] == "new.reader@example.com"
    assert data["user"]["role"] == "USER"
    assert "password" not in data["user"]


def test_register_without_cards(client):
    response = client.post("/api/auth/register", json=register_payload())
    assert response.status_code == 503
    assert response.json()["detail"] == "No free membership cards available"


def test_register_duplicate_email(client, free_card, test_user):
    response = client.post("/api/auth/register", json=register_payload(test_user.email))
    assert response.status_code == 409


def test_register_validation(client, free_card):
    response = client.post(
        "/api/auth/register",
        json={"email": "not-an-email", "firstName": "N", "lastName": "Reader", "password": "short"},
    )
    assert response.status_code == 422
    assert len(response.json()["errors"]) == 3


def test_login(client, test_user):
    response = client.post("/api/auth/login", json={"email": test_user.email, "password": "testpassword"})
    assert response.status_code == 200
    assert response.json()["user"]["id"] == test_user.id


def test_login_wrong_password(client, test_user):
    response = client.post("/api/auth/login", json={"email": test_user.email, "password": "nope-nope"})
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


# Users


def test_create_user(client):
    response = client.post("/api/users", json=register_payload("direct@example.com"))
    assert response.status_code == 201
    assert response.json()["firstName"] == "New"


def test_protected_route_requires_token(client, db_session):
    assert client.get("/api/books").status_code == 401
    assert client.get("/api/books", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_list_users_admin_only(client, admin_headers, user_headers):
    assert client.get("/api/users", headers=user_headers).status_code == 403
    response = client.get("/api/users", headers=admin_headers)
    assert response.status_code == 200
    assert {u["email"] for u in response.json()} == {"admin@example.com", "reader@example.com"}


def test_user_can_only_read_itself(client, test_user, other_user, user_headers, admin_headers):
    assert client.get(f"/api/users/{test_user.id}", headers=user_headers).status_code == 200
    assert client.get(f"/api/users/{other_user.id}", headers=user_headers).status_code == 403
    assert client.get(f"/api/users/{other_user.id}", headers=admin_headers).status_code == 200


def test_user_with_short_name_and_local_email_is_readable(client, db_session, admin_headers):
    user = crud.create_user(
        db_session,
        {"email": "root@localhost", "first_name": "A", "last_name": "B", "password": "x", "role": UserRole.USER},
    )
    response = client.get(f"/api/users/{user.id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["email"] == "root@localhost"
    assert client.get("/api/users", headers=admin_headers).status_code == 200


def test_update_user(client, test_user, user_headers):
    response = client.patch(f"/api/users/{test_user.id}", json={"firstName": "Renamed"}, headers=user_headers)
    assert response.status_code == 200
    assert response.json()["firstName"] == "Renamed"
    assert response.json()["lastName"] == "User"


def test_delete_user(client, test_user, user_headers):
    response = client.delete(f"/api/users/{test_user.id}", headers=user_headers)
    assert response.status_code == 204
    # the token now points at a deleted account
    assert client.get(f"/api/users/{test_user.id}", headers=user_headers).status_code == 401


def test_get_missing_user_as_admin(client, admin_headers):
    response = client.get("/api/users/999", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "User with id 999 not found"


# Authors


def test_author_crud(client, admin_headers, user_headers):
    payload = {"firstName": "Truman", "lastName": "Capote", "birthDate": "1924-09-30"}
    assert client.post("/api/authors", json=payload, headers=user_headers).status_code == 403

    response = client.post("/api/authors", json=payload, headers=admin_headers)
    assert response.status_code == 201
    author_id = response.json()["id"]

    response = client.patch(f"/api/authors/{author_id}", json={"deathDate": "1984-08-25"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["deathDate"] == "1984-08-25"

    assert client.get("/api/authors", headers=user_headers).status_code == 200
    assert client.delete(f"/api/authors/{author_id}", headers=admin_headers).status_code == 204
    assert client.get(f"/api/authors/{author_id}", headers=user_headers).status_code == 404


def test_get_author_with_books(client, test_book, test_author, user_headers):
    response = client.get(f"/api/authors/{test_author.id}", headers=user_headers)
    assert response.status_code == 200
    assert [b["id"] for b in response.json()["books"]] == [test_book.id]


# Books


def test_create_book_with_authors(client, test_author, admin_headers, user_headers):
    payload = {
        "title": "In Cold Blood",
        "isbn13": "9780679745587",
        "genre": "True Crime",
        "publicationDate": "1966-01-17",
        "authorIds": [test_author.id],
    }
    assert client.post("/api/books", json=payload, headers=user_headers).status_code == 403

    response = client.post("/api/books", json=payload, headers=admin_headers)
    assert response.status_code == 201
    book_id = response.json()["id"]

    response = client.get(f"/api/books/{book_id}", headers=user_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["isbn13"] == "9780679745587"
    assert data["publicationDate"] == "1966-01-17"
    assert [a["lastName"] for a in data["authors"]] == ["Lee"]


def test_create_book_duplicate_isbn13(client, test_book, admin_headers):
    response = client.post(
        "/api/books", json={"title": "Duplicate", "isbn13": "9780061120084"}, headers=admin_headers
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "Book with this ISBN-13 already exists"


def test_create_book_invalid_isbn(client, admin_headers, db_session):
    response = client.post("/api/books", json={"title": "Bad", "isbn13": "12345"}, headers=admin_headers)
    assert response.status_code == 422


def test_update_and_delete_book(client, test_book, admin_headers, user_headers):
    response = client.patch(f"/api/books/{test_book.id}", json={"genre": "Classic"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["genre"] == "Classic"
    assert response.json()["title"] == "To Kill a Mockingbird"

    assert client.delete(f"/api/books/{test_book.id}", headers=admin_headers).status_code == 204
    assert client.get(f"/api/books/{test_book.id}", headers=user_headers).status_code == 404


def test_search_books(client, test_book, user_headers):
    response = client.get("/api/books/search", params={"query": "mockingbird"}, headers=user_headers)
    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [test_book.id]


def test_search_books_simple(client, test_book, user_headers):
    response = client.get(
        "/api/books/search/simple", params={"authorName": "harper", "genre": "Fiction"}, headers=user_headers
    )
    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [test_book.id]

    response = client.get("/api/books/search/simple", params={"authorName": "Capote"}, headers=user_headers)
    assert response.json() == []


def test_search_external_books(client, catalog, volume_factory, user_headers):
    catalog.add(volume_factory())
    response = client.get("/api/books/external", params={"query": "mockingbird", "maxResults": 5}, headers=user_headers)
    assert response.status_code == 200
    assert response.json()[0]["id"] == "PGR2AwAAQBAJ"

    response = client.get("/api/books/external", params={"query": "x", "maxResults": 41}, headers=user_headers)
    assert response.status_code == 422


def test_create_book_from_isbn(client, catalog, volume_factory, admin_headers):
    catalog.add(volume_factory())
    response = client.post("/api/books/from-isbn", json={"isbn": "978-0-06-112008-4"}, headers=admin_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["externalSource"] == "google_books"
    assert data["publicationDate"] == "2006-05-01"

    response = client.post("/api/books/from-isbn", json={"isbn": "9780061120084"}, headers=admin_headers)
    assert response.status_code == 409


def test_enrich_book(client, catalog, volume_factory, admin_headers, db_session):
    book = crud.create_book(db_session, {"title": "Mockingbird", "isbn13": "9780061120084"})
    response = client.post(f"/api/books/{book.id}/enrich", headers=admin_headers)
    assert response.status_code == 404

    catalog.add(volume_factory())
    response = client.post(f"/api/books/{book.id}/enrich", headers=admin_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "Mockingbird"
    assert data["genre"] == "Fiction"
    assert data["externalId"] == "PGR2AwAAQBAJ"


# Loans


def test_loan_lifecycle(client, test_book, user_headers):
    response = client.post("/api/loans", json={"bookId": test_book.id}, headers=user_headers)
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "ONGOING"
    assert loan["dueAt"] is not None

    response = client.post(f"/api/loans/{loan['id']}/return", headers=user_headers)
    assert response.status_code == 200
    assert response.json()["status"] == LoanStatus.RETURNED.value

    response = client.post(f"/api/loans/{loan['id']}/return", headers=user_headers)
    assert response.status_code == 409


def test_late_return(client, test_book, user_headers):
    due_at = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
    loan = client.post("/api/loans", json={"bookId": test_book.id, "dueAt": due_at}, headers=user_headers).json()
    response = client.post(f"/api/loans/{loan['id']}/return", headers=user_headers)
    assert response.json()["status"] == "LATE"



def test_offset_due_date_returned_as_utc(client, test_book, user_headers):
    due_at = (datetime.now(timezone.utc) - timedelta(hours=1)).astimezone(timezone(timedelta(hours=5)))
    response = client.post("/api/loans", json={"bookId": test_book.id, "dueAt": due_at.isoformat()}, headers=user_headers)
    assert response.status_code == 201
    loan = response.json()

    returned_due_at = datetime.fromisoformat(loan["dueAt"].replace("Z", "+00:00"))
    assert returned_due_at.utcoffset() == timedelta(0)
    assert returned_due_at == due_at

    response = client.post(f"/api/loans/{loan['id']}/return", headers=user_headers)
    assert response.json()["status"] == "LATE"

def test_book_already_loaned(client, test_book, user_headers, other_headers):
    assert client.post("/api/loans", json={"bookId": test_book.id}, headers=user_headers).status_code == 201
    response = client.post("/api/loans", json={"bookId": test_book.id}, headers=other_headers)
    assert response.status_code == 409


def test_loan_missing_book(client, user_headers):
    assert client.post("/api/loans", json={"bookId": 999}, headers=user_headers).status_code == 404


def test_admin_cannot_borrow(client, test_book, admin_headers):
    assert client.post("/api/loans", json={"bookId": test_book.id}, headers=admin_headers).status_code == 403


def test_only_owner_returns_loan(client, test_book, user_headers, other_headers, admin_headers):
    loan = client.post("/api/loans", json={"bookId": test_book.id}, headers=user_headers).json()
    assert client.post(f"/api/loans/{loan['id']}/return", headers=other_headers).status_code == 403
    assert client.get(f"/api/loans/{loan['id']}", headers=other_headers).status_code == 403
    assert client.get(f"/api/loans/{loan['id']}", headers=admin_headers).status_code == 200


def test_loan_queries(client, test_user, test_book, user_headers, admin_headers):
    loan = client.post("/api/loans", json={"bookId": test_book.id}, headers=user_headers).json()

    my = client.get("/api/loans/my", headers=user_headers)
    assert [l["id"] for l in my.json()] == [loan["id"]]
    assert client.get("/api/loans", headers=user_headers).status_code == 403

    ongoing = client.get("/api/loans", headers=admin_headers)
    assert [l["id"] for l in ongoing.json()] == [loan["id"]]

    by_user = client.get("/api/loans/search", params={"userId": test_user.id}, headers=admin_headers)
    assert [l["id"] for l in by_user.json()] == [loan["id"]]
    by_book = client.get("/api/loans/search", params={"bookId": test_book.id}, headers=admin_headers)
    assert [l["bookId"] for l in by_book.json()] == [test_book.id]

    assert client.get("/api/loans/search", headers=admin_headers).status_code == 400


def test_my_loans_lists_only_ongoing(client, test_user, test_book, user_headers, admin_headers):
    loan = client.post("/api/loans", json={"bookId": test_book.id}, headers=user_headers).json()
    client.post(f"/api/loans/{loan['id']}/return", headers=user_headers)

    assert client.get("/api/loans/my", headers=user_headers).json() == []
    history = client.get("/api/loans/search", params={"userId": test_user.id}, headers=admin_headers)
    assert [l["id"] for l in history.json()] == [loan["id"]]


# Membership cards


def test_membership_cards(client, admin_headers, user_headers):
    assert client.post("/api/membership-cards", json={"serialNumber": "BB000000009"}, headers=user_headers).status_code == 403

    response = client.post("/api/membership-cards", json={"serialNumber": "BB000000009"}, headers=admin_headers)
    assert response.status_code == 201
    card = response.json()
    assert card["status"] == "FREE"

    duplicate = client.post("/api/membership-cards", json={"serialNumber": "BB000000009"}, headers=admin_headers)
    assert duplicate.status_code == 409
    short = client.post("/api/membership-cards", json={"serialNumber": "BB1"}, headers=admin_headers)
    assert short.status_code == 422

    response = client.post(f"/api/membership-cards/{card['id']}/archive", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == CardStatus.ARCHIVED.value

    free = client.get("/api/membership-cards", params={"status": "FREE"}, headers=admin_headers)
    assert free.json() == []


def test_registration_drains_card_pool(client, db_session, admin_headers):
    crud.create_card(db_session, {"serial_number": "BB000000001"})

    assert client.post("/api/auth/register", json=register_payload("a@example.com")).status_code == 201
    assert client.post("/api/auth/register", json=register_payload("b@example.com")).status_code == 503

    cards = client.get("/api/membership-cards", headers=admin_headers).json()
    assert [c["status"] for c in cards] == ["IN_USE"]


def test_token_for_missing_user(client, db_session, test_user):
    token = create_access_token(test_user)
    crud.delete_user(db_session, test_user.id)
    response = client.get("/api/books", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401

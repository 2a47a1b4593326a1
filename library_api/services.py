import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from library_api import crud
from library_api.auth import create_access_token, hash_password, verify_password
from library_api.exceptions import (
    BadRequestError,
    ConflictError,
    ConstraintViolationError,
    DatabaseError,
    InvalidCredentialsError,
    LibraryException,
    NoCapacityError,
    NotFoundError,
    with_error_handling,
)
from library_api.google_books import GoogleBooksClient
from library_api.models import (
    Author,
    Book,
    CardStatus,
    Loan,
    LoanStatus,
    MembershipCard,
    User,
    UserRole,
    to_utc,
    utcnow,
)
from library_api.schemas import AuthResponse, LoginRequest, UserCreate, UserSchema, UserUpdate

DEFAULT_LOAN_DAYS = 21

CONFLICT_MESSAGES = {
    "users_email_key": "User with this email already exists",
    "uniq_books_isbn_13": "Book with this ISBN-13 already exists",
    "membership_cards_serial_number_key": "Membership card with this serial number already exists",
    "uniq_membership_cards_user_active": "User already holds an active membership card",
    "uniq_loans_book_ongoing": "Book is already loaned",
}

# Fields copied from the catalog only while the local value is empty
ENRICHABLE_FIELDS = [
    "description",
    "cover_image_url",
    "genre",
    "publication_date",
    "isbn10",
    "isbn13",
]
PROVENANCE_FIELDS = ["external_source", "external_id", "external_metadata"]

logger = logging.getLogger(__name__)


def conflict_from(error: ConstraintViolationError, message: Optional[str] = None) -> ConflictError:
    return ConflictError(message or CONFLICT_MESSAGES.get(error.constraint, "Resource already exists"))


def _auth_response(user: User) -> AuthResponse:
    return AuthResponse(access_token=create_access_token(user), user=UserSchema.model_validate(user))


# Auth


@with_error_handling("AuthService", "login")
def login(db: Session, credentials: LoginRequest) -> AuthResponse:
    user = crud.get_user_by_email(db, credentials.email)
    if user is None or not verify_password(credentials.password, user.password):
        raise InvalidCredentialsError()
    logger.info(f"User {user.id} logged in")
    return _auth_response(user)


@with_error_handling("AuthService", "register")
def register(db: Session, data: UserCreate) -> AuthResponse:
    """Create a USER account and hand it the lowest-id FREE membership card.

    The user row and the card assignment are committed together; when no FREE
    card is left nothing is written and NoCapacityError is raised.
    """
    try:
        card = crud.get_first_free_card(db, lock=True)
        if card is None:
            raise NoCapacityError()
        if crud.user_exists_by_email(db, data.email):
            raise ConflictError(CONFLICT_MESSAGES["users_email_key"])

        user = crud.create_user(
            db,
            {
                "email": data.email,
                "first_name": data.first_name,
                "last_name": data.last_name,
                "password": hash_password(data.password),
                "role": UserRole.USER,
            },
            commit=False,
        )
        crud.update_card(
            db,
            card.id,
            {"status": CardStatus.IN_USE, "user_id": user.id, "assigned_at": utcnow()},
            commit=False,
        )
        db.commit()
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    except LibraryException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("register", str(e), service="AuthService") from e

    db.refresh(user)
    logger.info(f"Registered user {user.id} with membership card {card.serial_number}")
    return _auth_response(user)


# Users


@with_error_handling("UsersService", "create")
def create_user(db: Session, data: UserCreate) -> User:
    if crud.user_exists_by_email(db, data.email):
        raise ConflictError(CONFLICT_MESSAGES["users_email_key"])
    try:
        user = crud.create_user(
            db,
            {
                "email": data.email,
                "first_name": data.first_name,
                "last_name": data.last_name,
                "password": hash_password(data.password),
                "role": UserRole.USER,
            },
        )
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    logger.info(f"Created user {user.id}")
    return user


@with_error_handling("UsersService", "findOne")
def get_user(db: Session, user_id: int) -> User:
    user = crud.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


@with_error_handling("UsersService", "findAll")
def list_users(db: Session) -> List[User]:
    return crud.list_users(db)


@with_error_handling("UsersService", "update")
def update_user(db: Session, user_id: int, data: UserUpdate) -> User:
    user = get_user(db, user_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    if "email" in changes and changes["email"] != user.email:
        if crud.user_exists_by_email(db, changes["email"]):
            raise ConflictError(CONFLICT_MESSAGES["users_email_key"])
    if "password" in changes:
        changes["password"] = hash_password(changes["password"])

    try:
        updated = crud.update_user(db, user_id, changes)
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    if updated is None:
        raise NotFoundError("User", user_id)
    logger.info(f"Updated user {user_id}")
    return updated


@with_error_handling("UsersService", "remove")
def delete_user(db: Session, user_id: int):
    get_user(db, user_id)
    if not crud.delete_user(db, user_id):
        raise NotFoundError("User", user_id)
    logger.info(f"Deleted user {user_id}")


# Authors


@with_error_handling("AuthorsService", "create")
def create_author(db: Session, values: dict) -> Author:
    author = crud.create_author(db, values)
    logger.info(f"Created author {author.id}")
    return author


@with_error_handling("AuthorsService", "findOne")
def get_author(db: Session, author_id: int) -> Author:
    author = crud.get_author(db, author_id, with_books=True)
    if author is None:
        raise NotFoundError("Author", author_id)
    return author


@with_error_handling("AuthorsService", "findAll")
def list_authors(db: Session) -> List[Author]:
    return crud.list_authors(db)


@with_error_handling("AuthorsService", "update")
def update_author(db: Session, author_id: int, values: dict) -> Author:
    if values.get("last_name", "") is None:
        del values["last_name"]
    author = crud.update_author(db, author_id, values)
    if author is None:
        raise NotFoundError("Author", author_id)
    return author


@with_error_handling("AuthorsService", "remove")
def delete_author(db: Session, author_id: int):
    if not crud.delete_author(db, author_id):
        raise NotFoundError("Author", author_id)
    logger.info(f"Deleted author {author_id}")


# Books


def _resolve_authors(db: Session, author_ids: List[int]) -> List[Author]:
    authors = crud.get_authors_by_ids(db, author_ids)
    found = {author.id for author in authors}
    for author_id in author_ids:
        if author_id not in found:
            raise NotFoundError("Author", author_id)
    return authors


@with_error_handling("BooksService", "create")
def create_book(db: Session, values: dict, author_ids: Optional[List[int]] = None) -> Book:
    if values.get("isbn13") and crud.book_exists_by_isbn13(db, values["isbn13"]):
        raise ConflictError(CONFLICT_MESSAGES["uniq_books_isbn_13"])
    authors = _resolve_authors(db, author_ids) if author_ids else None
    try:
        book = crud.create_book(db, values, authors=authors)
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    logger.info(f"Created book {book.id}: {book.title}")
    return book


@with_error_handling("BooksService", "findAll")
def list_books(db: Session) -> List[Book]:
    return crud.list_books(db)


@with_error_handling("BooksService", "findOne")
def get_book(db: Session, book_id: int) -> Book:
    book = crud.get_book(db, book_id, with_authors=True)
    if book is None:
        raise NotFoundError("Book", book_id)
    return book


@with_error_handling("BooksService", "update")
def update_book(
    db: Session, book_id: int, values: dict, author_ids: Optional[List[int]] = None
) -> Book:
    existing = crud.get_book(db, book_id)
    if existing is None:
        raise NotFoundError("Book", book_id)

    if values.get("title", "") is None:
        del values["title"]
    isbn13 = values.get("isbn13")
    if isbn13 and isbn13 != existing.isbn13:
        if crud.book_exists_by_isbn13(db, isbn13, exclude_id=book_id):
            raise ConflictError(CONFLICT_MESSAGES["uniq_books_isbn_13"])

    authors = _resolve_authors(db, author_ids) if author_ids is not None else None
    try:
        book = crud.update_book(db, book_id, values, authors=authors)
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    if book is None:
        raise NotFoundError("Book", book_id)
    logger.info(f"Updated book {book_id}")
    return book


@with_error_handling("BooksService", "remove")
def delete_book(db: Session, book_id: int):
    get_book(db, book_id)
    if not crud.delete_book(db, book_id):
        raise NotFoundError("Book", book_id)
    logger.info(f"Deleted book {book_id}")


@with_error_handling("BooksService", "search")
def search_books(db: Session, query: Optional[str] = None, genre: Optional[str] = None) -> List[Book]:
    return crud.search_books(db, query=query, genre=genre)


@with_error_handling("BooksService", "searchSimple")
def search_books_simple(
    db: Session,
    title: Optional[str] = None,
    genre: Optional[str] = None,
    author_name: Optional[str] = None,
) -> List[Book]:
    return crud.search_books_simple(db, title=title, genre=genre, author_name=author_name)


@with_error_handling("BooksService", "enrichFromGoogleBooks")
def enrich_book(db: Session, catalog: GoogleBooksClient, book_id: int) -> Book:
    book = get_book(db, book_id)

    volume = None
    if book.isbn13:
        volume = catalog.search_by_isbn13(book.isbn13)
    elif book.isbn10:
        volume = catalog.search_by_isbn10(book.isbn10)
    if volume is None:
        raise NotFoundError(
            "Book",
            book.isbn13 or book.isbn10 or book_id,
            field="ISBN" if (book.isbn13 or book.isbn10) else "id",
        )

    external = catalog.to_book_data(volume)
    changes = {
        field: external[field]
        for field in ENRICHABLE_FIELDS
        if not getattr(book, field) and external.get(field)
    }
    for field in PROVENANCE_FIELDS:
        changes[field] = external.get(field)
    return update_book(db, book_id, changes)


def clean_isbn(isbn: str) -> str:
    return isbn.replace("-", "").replace(" ", "").upper()


@with_error_handling("BooksService", "createFromGoogleBooks")
def create_book_from_isbn(db: Session, catalog: GoogleBooksClient, isbn: str) -> Book:
    cleaned = clean_isbn(isbn)
    if len(cleaned) == 13:
        volume = catalog.search_by_isbn13(cleaned)
    else:
        volume = catalog.search_by_isbn10(cleaned)
    if volume is None:
        raise NotFoundError("Book", isbn, field="ISBN")

    values = catalog.to_book_data(volume)
    if values.get("isbn13") and crud.book_exists_by_isbn13(db, values["isbn13"]):
        raise ConflictError(CONFLICT_MESSAGES["uniq_books_isbn_13"])
    return create_book(db, values)


@with_error_handling("BooksService", "searchGoogleBooks")
def search_external_books(catalog: GoogleBooksClient, query: str, max_results: int = 10) -> list:
    if not 1 <= max_results <= 40:
        raise BadRequestError("maxResults must be between 1 and 40")
    return catalog.search(query, max_results)


# Loans


@with_error_handling("LoansService", "create")
def create_loan(
    db: Session, book_id: int, user_id: int, due_at: Optional[datetime] = None
) -> Loan:
    if crud.get_book(db, book_id) is None:
        raise NotFoundError("Book", book_id)
    already_loaned = f"Book with id {book_id} is already loaned"
    if crud.is_book_loaned(db, book_id):
        raise ConflictError(already_loaned)

    borrowed_at = utcnow()
    if due_at is None:
        due_at = borrowed_at + timedelta(days=DEFAULT_LOAN_DAYS)
    try:
        loan = crud.create_loan(
            db,
            {
                "user_id": user_id,
                "book_id": book_id,
                "status": LoanStatus.ONGOING,
                "borrowed_at": borrowed_at,
                "due_at": to_utc(due_at),
            },
        )
    except ConstraintViolationError as e:
        # lost the race against a concurrent loan of the same book
        raise conflict_from(e, already_loaned) from e
    logger.info(f"User {user_id} borrowed book {book_id} (loan {loan.id})")
    return loan


def is_late(loan: Loan, now: datetime) -> bool:
    due_at = to_utc(loan.due_at)
    return due_at is not None and now > due_at


@with_error_handling("LoansService", "returnLoan")
def return_loan(db: Session, loan_id: int) -> Loan:
    loan = crud.get_loan(db, loan_id)
    if loan is None:
        raise NotFoundError("Loan", loan_id)
    if loan.returned_at is not None:
        raise ConflictError(f"Loan with id {loan_id} is already returned")

    now = utcnow()
    status = LoanStatus.LATE if is_late(loan, now) else LoanStatus.RETURNED
    updated = crud.update_loan(db, loan_id, {"status": status, "returned_at": now})
    if updated is None:
        raise NotFoundError("Loan", loan_id)
    logger.info(f"Loan {loan_id} closed as {status.value}")
    return updated


@with_error_handling("LoansService", "findOne")
def get_loan(db: Session, loan_id: int) -> Loan:
    loan = crud.get_loan(db, loan_id)
    if loan is None:
        raise NotFoundError("Loan", loan_id)
    return loan


@with_error_handling("LoansService", "findOngoing")
def get_ongoing_loans(db: Session, user_id: Optional[int] = None) -> List[Loan]:
    if user_id is None:
        return crud.get_ongoing_loans(db)
    return crud.get_ongoing_loans_by_user(db, user_id)


@with_error_handling("LoansService", "findByUserId")
def get_loans_by_user(db: Session, user_id: int) -> List[Loan]:
    return crud.get_loans_by_user(db, user_id)


@with_error_handling("LoansService", "findByBookId")
def get_loans_by_book(db: Session, book_id: int) -> List[Loan]:
    return crud.get_loans_by_book(db, book_id)


# Membership cards


@with_error_handling("MembershipCardsService", "findFreeMembershipCard")
def find_first_free_card(db: Session) -> Optional[MembershipCard]:
    return crud.get_first_free_card(db)


@with_error_handling("MembershipCardsService", "assignToUser")
def assign_card_to_user(db: Session, card_id: int, user_id: int) -> MembershipCard:
    try:
        card = crud.update_card(
            db,
            card_id,
            {"status": CardStatus.IN_USE, "user_id": user_id, "assigned_at": utcnow()},
        )
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    if card is None:
        raise NotFoundError("MembershipCard", card_id)
    return card


@with_error_handling("MembershipCardsService", "create")
def create_card(db: Session, serial_number: str) -> MembershipCard:
    if crud.card_exists_by_serial_number(db, serial_number):
        raise ConflictError(CONFLICT_MESSAGES["membership_cards_serial_number_key"])
    try:
        card = crud.create_card(db, {"serial_number": serial_number, "status": CardStatus.FREE})
    except ConstraintViolationError as e:
        raise conflict_from(e) from e
    logger.info(f"Created membership card {serial_number}")
    return card


@with_error_handling("MembershipCardsService", "findAll")
def list_cards(db: Session, status: Optional[CardStatus] = None) -> List[MembershipCard]:
    return crud.list_cards(db, status=status)


@with_error_handling("MembershipCardsService", "archive")
def archive_card(db: Session, card_id: int) -> MembershipCard:
    card = crud.update_card(
        db,
        card_id,
        {"status": CardStatus.ARCHIVED, "user_id": None, "archived_at": utcnow()},
    )
    if card is None:
        raise NotFoundError("MembershipCard", card_id)
    logger.info(f"Archived membership card {card.serial_number}")
    return card

import logging
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from library_api.exceptions import ConstraintViolationError, DatabaseError
from library_api.models import (
    Author,
    Book,
    CardStatus,
    Loan,
    MembershipCard,
    User,
    book_authors,
    utcnow,
)

logger = logging.getLogger(__name__)

# unique constraint name -> column SQLite reports instead of the name
UNIQUE_CONSTRAINTS = {
    "users_email_key": "users.email",
    "uniq_books_isbn_13": "books.isbn_13",
    "membership_cards_serial_number_key": "membership_cards.serial_number",
    "uniq_membership_cards_user_active": "membership_cards.user_id",
    "uniq_loans_book_ongoing": "loans.book_id",
}


def violated_constraint(error: IntegrityError) -> Optional[str]:
    message = str(error.orig)
    for name, column in UNIQUE_CONSTRAINTS.items():
        if name in message:
            return name
        if "UNIQUE constraint failed" in message and column in message:
            return name
    return None


def _write(db: Session, operation: str, instance=None, commit: bool = True):
    try:
        if instance is not None:
            db.add(instance)
        if commit:
            db.commit()
            if instance is not None:
                db.refresh(instance)
        else:
            db.flush()
        return instance
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error during {operation}: {e.orig}")
        constraint = violated_constraint(e)
        if constraint is None:
            raise DatabaseError(operation, str(e.orig))
        raise ConstraintViolationError(operation, constraint, str(e.orig))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise DatabaseError(operation, str(e))


def _apply_changes(instance, data: dict):
    for key, value in data.items():
        setattr(instance, key, value)
    instance.updated_at = utcnow()


def _delete_where(db: Session, operation: str, query) -> bool:
    try:
        deleted = query.delete(synchronize_session=False)
        db.commit()
        return deleted > 0
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise DatabaseError(operation, str(e))


# Users


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def user_exists_by_email(db: Session, email: str) -> bool:
    return db.query(User.id).filter(User.email == email).first() is not None


def list_users(db: Session, skip: int = 0, limit: int = 100) -> List[User]:
    return db.query(User).order_by(User.id).offset(skip).limit(limit).all()


def create_user(db: Session, data: dict, commit: bool = True) -> User:
    return _write(db, "create user", User(**data), commit=commit)


def update_user(db: Session, user_id: int, data: dict, commit: bool = True) -> Optional[User]:
    user = get_user(db, user_id)
    if user is None:
        return None
    _apply_changes(user, data)
    return _write(db, "update user", user, commit=commit)


def delete_user(db: Session, user_id: int) -> bool:
    return _delete_where(db, "delete user", db.query(User).filter(User.id == user_id))


# Authors


def get_author(db: Session, author_id: int, with_books: bool = False) -> Optional[Author]:
    query = db.query(Author)
    if with_books:
        query = query.options(selectinload(Author.books))
    return query.filter(Author.id == author_id).first()


def list_authors(db: Session) -> List[Author]:
    return db.query(Author).order_by(Author.last_name, Author.id).all()


def get_authors_by_ids(db: Session, author_ids: List[int]) -> List[Author]:
    if not author_ids:
        return []
    return db.query(Author).filter(Author.id.in_(author_ids)).all()


def get_authors_by_book(db: Session, book_id: int) -> List[Author]:
    return (
        db.query(Author)
        .join(book_authors, book_authors.c.author_id == Author.id)
        .filter(book_authors.c.book_id == book_id)
        .order_by(Author.id)
        .all()
    )


def create_author(db: Session, data: dict) -> Author:
    return _write(db, "create author", Author(**data))


def update_author(db: Session, author_id: int, data: dict) -> Optional[Author]:
    author = get_author(db, author_id)
    if author is None:
        return None
    _apply_changes(author, data)
    return _write(db, "update author", author)


def delete_author(db: Session, author_id: int) -> bool:
    return _delete_where(db, "delete author", db.query(Author).filter(Author.id == author_id))


# Books


def get_book(db: Session, book_id: int, with_authors: bool = False) -> Optional[Book]:
    query = db.query(Book)
    if with_authors:
        query = query.options(selectinload(Book.authors))
    return query.filter(Book.id == book_id).first()


def list_books(db: Session, skip: int = 0, limit: int = 100) -> List[Book]:
    return db.query(Book).order_by(Book.id).offset(skip).limit(limit).all()


def book_exists_by_isbn13(db: Session, isbn13: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Book.id).filter(Book.isbn13 == isbn13)
    if exclude_id is not None:
        query = query.filter(Book.id != exclude_id)
    return query.first() is not None


def create_book(db: Session, data: dict, authors: Optional[List[Author]] = None) -> Book:
    book = Book(**data)
    if authors:
        book.authors = authors
    return _write(db, "create book", book)


def update_book(
    db: Session, book_id: int, data: dict, authors: Optional[List[Author]] = None
) -> Optional[Book]:
    book = get_book(db, book_id)
    if book is None:
        return None
    _apply_changes(book, data)
    if authors is not None:
        book.authors = authors
    return _write(db, "update book", book)


def delete_book(db: Session, book_id: int) -> bool:
    return _delete_where(db, "delete book", db.query(Book).filter(Book.id == book_id))


def search_books(db: Session, query: Optional[str] = None, genre: Optional[str] = None) -> List[Book]:
    q = db.query(Book)
    if query:
        if db.get_bind().dialect.name == "postgresql":
            ts_query = func.plainto_tsquery("english", query)
            q = q.filter(Book.search_vector.op("@@")(ts_query)).order_by(
                func.ts_rank(Book.search_vector, ts_query).desc(), Book.id
            )
        else:
            pattern = f"%{query}%"
            q = q.filter(
                or_(
                    Book.title.ilike(pattern),
                    Book.genre.ilike(pattern),
                    Book.description.ilike(pattern),
                )
            ).order_by(Book.id)
    else:
        q = q.order_by(Book.id)
    if genre:
        q = q.filter(Book.genre == genre)
    return q.all()


def search_books_simple(
    db: Session,
    title: Optional[str] = None,
    genre: Optional[str] = None,
    author_name: Optional[str] = None,
) -> List[Book]:
    q = db.query(Book)
    if title:
        q = q.filter(Book.title.ilike(f"%{title}%"))
    if genre:
        q = q.filter(Book.genre == genre)
    if author_name:
        pattern = f"%{author_name}%"
        full_name = func.coalesce(Author.first_name, "") + " " + Author.last_name
        q = q.filter(
            Book.authors.any(
                or_(
                    Author.first_name.ilike(pattern),
                    Author.last_name.ilike(pattern),
                    full_name.ilike(pattern),
                )
            )
        )
    return q.order_by(Book.id).all()


# Loans


def get_loan(db: Session, loan_id: int) -> Optional[Loan]:
    return db.query(Loan).filter(Loan.id == loan_id).first()


def get_loans_by_user(db: Session, user_id: int) -> List[Loan]:
    return db.query(Loan).filter(Loan.user_id == user_id).order_by(Loan.id).all()


def get_loans_by_book(db: Session, book_id: int) -> List[Loan]:
    return db.query(Loan).filter(Loan.book_id == book_id).order_by(Loan.id).all()


def get_ongoing_loans(db: Session) -> List[Loan]:
    return db.query(Loan).filter(Loan.returned_at.is_(None)).order_by(Loan.id).all()


def get_ongoing_loans_by_user(db: Session, user_id: int) -> List[Loan]:
    return (
        db.query(Loan)
        .filter(Loan.user_id == user_id, Loan.returned_at.is_(None))
        .order_by(Loan.id)
        .all()
    )


def get_ongoing_loan_by_book(db: Session, book_id: int) -> Optional[Loan]:
    return (
        db.query(Loan)
        .filter(Loan.book_id == book_id, Loan.returned_at.is_(None))
        .first()
    )


def is_book_loaned(db: Session, book_id: int) -> bool:
    return get_ongoing_loan_by_book(db, book_id) is not None


def create_loan(db: Session, data: dict) -> Loan:
    return _write(db, "create loan", Loan(**data))


def update_loan(db: Session, loan_id: int, data: dict) -> Optional[Loan]:
    loan = get_loan(db, loan_id)
    if loan is None:
        return None
    _apply_changes(loan, data)
    return _write(db, "update loan", loan)


# Membership cards


def get_card(db: Session, card_id: int) -> Optional[MembershipCard]:
    return db.query(MembershipCard).filter(MembershipCard.id == card_id).first()


def get_card_by_serial_number(db: Session, serial_number: str) -> Optional[MembershipCard]:
    return (
        db.query(MembershipCard)
        .filter(MembershipCard.serial_number == serial_number)
        .first()
    )


def card_exists_by_serial_number(db: Session, serial_number: str) -> bool:
    return get_card_by_serial_number(db, serial_number) is not None


def list_cards(db: Session, status: Optional[CardStatus] = None) -> List[MembershipCard]:
    query = db.query(MembershipCard)
    if status is not None:
        query = query.filter(MembershipCard.status == status)
    return query.order_by(MembershipCard.id).all()


def get_first_free_card(db: Session, lock: bool = False) -> Optional[MembershipCard]:
    query = (
        db.query(MembershipCard)
        .filter(MembershipCard.status == CardStatus.FREE)
        .order_by(MembershipCard.id)
    )
    if lock:
        # concurrent registrations each reserve a different card
        query = query.with_for_update(skip_locked=True)
    return query.first()


def create_card(db: Session, data: dict) -> MembershipCard:
    return _write(db, "create membership card", MembershipCard(**data))


def update_card(db: Session, card_id: int, data: dict, commit: bool = True) -> Optional[MembershipCard]:
    card = get_card(db, card_id)
    if card is None:
        return None
    _apply_changes(card, data)
    return _write(db, "update membership card", card, commit=commit)


import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DDL,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntId = BigInteger().with_variant(Integer, "sqlite")


def utcnow():
    return datetime.now(timezone.utc)


def to_utc(value):
    # naive values are taken to be UTC already
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores timestamps as UTC and always returns them timezone-aware.

    SQLite drops tzinfo on write, so offsets are folded into UTC first.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return to_utc(value)

    def process_result_value(self, value, dialect):
        return to_utc(value)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class CardStatus(str, enum.Enum):
    FREE = "FREE"
    IN_USE = "IN_USE"
    ARCHIVED = "ARCHIVED"


class LoanStatus(str, enum.Enum):
    ONGOING = "ONGOING"
    RETURNED = "RETURNED"
    LATE = "LATE"


book_authors = Table(
    "book_authors",
    Base.metadata,
    Column(
        "book_id",
        BigIntId,
        ForeignKey("books.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "author_id",
        BigIntId,
        ForeignKey("authors.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class User(Base):
    __tablename__ = "users"

    id = Column(BigIntId, primary_key=True, index=True)
    email = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(
        Enum(UserRole, name="user_role"), nullable=False, default=UserRole.USER
    )
    password = Column(String(255), nullable=False)
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)

    loans = relationship(
        "Loan", back_populates="user", cascade="all, delete", passive_deletes=True
    )
    membership_cards = relationship(
        "MembershipCard", back_populates="user", passive_deletes=True
    )

    __table_args__ = (
        Index("users_email_key", "email", unique=True),
        Index("idx_users_role", "role"),
    )


class Author(Base):
    __tablename__ = "authors"

    id = Column(BigIntId, primary_key=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=False, index=True)
    birth_date = Column(Date, nullable=True)
    death_date = Column(Date, nullable=True)
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)

    books = relationship(
        "Book", secondary=book_authors, back_populates="authors", passive_deletes=True
    )


class Book(Base):
    __tablename__ = "books"

    id = Column(BigIntId, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    isbn10 = Column("isbn_10", String(10), nullable=True)
    isbn13 = Column("isbn_13", String(13), nullable=True)
    genre = Column(String(100), nullable=True, index=True)
    publication_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    cover_image_url = Column(Text, nullable=True)
    external_source = Column(String(100), nullable=True)
    external_id = Column(String(255), nullable=True)
    external_metadata = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    # maintained by the books_search_vector_update trigger on PostgreSQL
    search_vector = Column(
        Text().with_variant(TSVECTOR, "postgresql"), nullable=True
    )
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)

    authors = relationship(
        "Author", secondary=book_authors, back_populates="books", passive_deletes=True
    )
    loans = relationship(
        "Loan", back_populates="book", cascade="all, delete", passive_deletes=True
    )

    __table_args__ = (
        Index(
            "uniq_books_isbn_13",
            "isbn_13",
            unique=True,
            postgresql_where=text("isbn_13 IS NOT NULL"),
            sqlite_where=text("isbn_13 IS NOT NULL"),
        ),
        Index(
            "idx_books_search_vector",
            "search_vector",
            postgresql_using="gin",
        ).ddl_if(dialect="postgresql"),
    )


class MembershipCard(Base):
    __tablename__ = "membership_cards"

    id = Column(BigIntId, primary_key=True, index=True)
    serial_number = Column(String(20), nullable=False)
    status = Column(
        Enum(CardStatus, name="card_status"), nullable=False, default=CardStatus.FREE
    )
    user_id = Column(
        BigIntId, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at = Column(UTCDateTime(timezone=True), nullable=True)
    archived_at = Column(UTCDateTime(timezone=True), nullable=True)
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="membership_cards")

    __table_args__ = (
        Index("membership_cards_serial_number_key", "serial_number", unique=True),
        Index("idx_membership_cards_status_serial", "status", "serial_number"),
        Index(
            "uniq_membership_cards_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'IN_USE'"),
            sqlite_where=text("status = 'IN_USE'"),
        ),
    )


class Loan(Base):
    __tablename__ = "loans"

    id = Column(BigIntId, primary_key=True, index=True)
    user_id = Column(
        BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    book_id = Column(
        BigIntId, ForeignKey("books.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(
        Enum(LoanStatus, name="loan_status"),
        nullable=False,
        default=LoanStatus.ONGOING,
    )
    borrowed_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    due_at = Column(UTCDateTime(timezone=True), nullable=True)
    returned_at = Column(UTCDateTime(timezone=True), nullable=True)
    created_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="loans")
    book = relationship("Book", back_populates="loans")

    __table_args__ = (
        Index("idx_loans_book_id", "book_id"),
        Index("idx_loans_user_id", "user_id"),
        Index(
            "uniq_loans_book_ongoing",
            "book_id",
            unique=True,
            postgresql_where=text("returned_at IS NULL"),
            sqlite_where=text("returned_at IS NULL"),
        ),
    )


# Full-text search vector, kept in sync by the database itself
_search_vector_function = DDL(
    """
    CREATE OR REPLACE FUNCTION books_search_vector_refresh() RETURNS trigger AS $$
    BEGIN
        NEW.search_vector :=
            setweight(to_tsvector('english', coalesce(NEW.title, '')), 'A') ||
            setweight(to_tsvector('english', coalesce(NEW.genre, '')), 'B') ||
            setweight(to_tsvector('english', coalesce(NEW.description, '')), 'C');
        RETURN NEW;
    END
    $$ LANGUAGE plpgsql;
    """
)
_search_vector_trigger = DDL(
    """
    CREATE TRIGGER books_search_vector_update
    BEFORE INSERT OR UPDATE OF title, genre, description ON books
    FOR EACH ROW EXECUTE FUNCTION books_search_vector_refresh();
    """
)

event.listen(
    Book.__table__,
    "after_create",
    _search_vector_function.execute_if(dialect="postgresql"),
)
event.listen(
    Book.__table__,
    "after_create",
    _search_vector_trigger.execute_if(dialect="postgresql"),
)

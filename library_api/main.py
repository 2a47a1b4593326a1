import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Response, status
from sqlalchemy.orm import Session

from library_api import services
from library_api.auth import get_current_user, require_roles
from library_api.exceptions import BadRequestError, ForbiddenError, add_exception_handlers
from library_api.google_books import GoogleBooksClient, get_catalog
from library_api.models import Base, CardStatus, User, UserRole
from library_api.schemas import (
    AuthorCreate,
    AuthorSchema,
    AuthorUpdate,
    AuthorWithBooksSchema,
    AuthResponse,
    BookCreate,
    BookSchema,
    BookUpdate,
    BookWithAuthorsSchema,
    ImportBookRequest,
    LoanCreate,
    LoanSchema,
    LoginRequest,
    MembershipCardCreate,
    MembershipCardSchema,
    UserCreate,
    UserSchema,
    UserUpdate,
)
from library_api.storage import engine, get_db

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Creating database schema")
        Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Library Management API",
    lifespan=lifespan,
    description="Users, authors, books, loans and membership cards for a lending library",
    version="1.0.0",
)

add_exception_handlers(app)

admin_only = require_roles(UserRole.ADMIN)
user_only = require_roles(UserRole.USER)


def ensure_self_or_admin(current_user: User, user_id: int):
    if current_user.role != UserRole.ADMIN and current_user.id != user_id:
        raise ForbiddenError("You can only access your own account")


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


# Auth


@app.post("/api/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(user: UserCreate, db: Session = Depends(get_db)):
    return services.register(db, user)


@app.post("/api/auth/login", response_model=AuthResponse)
def login(credentials: LoginRequest, db: Session = Depends(get_db)):
    return services.login(db, credentials)


# Users


@app.post("/api/users", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    return services.create_user(db, user)


@app.get("/api/users", response_model=List[UserSchema])
def list_users(db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.list_users(db)


@app.get("/api/users/{user_id}", response_model=UserSchema)
def get_user(user_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    ensure_self_or_admin(current_user, user_id)
    return services.get_user(db, user_id)


@app.patch("/api/users/{user_id}", response_model=UserSchema)
def update_user(
    user_id: int,
    user: UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    ensure_self_or_admin(current_user, user_id)
    return services.update_user(db, user_id, user)


@app.delete("/api/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(user_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    ensure_self_or_admin(current_user, user_id)
    services.delete_user(db, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Authors


@app.get("/api/authors", response_model=List[AuthorSchema])
def list_authors(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return services.list_authors(db)


@app.get("/api/authors/{author_id}", response_model=AuthorWithBooksSchema)
def get_author(author_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return services.get_author(db, author_id)


@app.post("/api/authors", response_model=AuthorSchema, status_code=status.HTTP_201_CREATED)
def create_author(author: AuthorCreate, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.create_author(db, author.model_dump())


@app.patch("/api/authors/{author_id}", response_model=AuthorSchema)
def update_author(
    author_id: int,
    author: AuthorUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    return services.update_author(db, author_id, author.model_dump(exclude_unset=True))


@app.delete("/api/authors/{author_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_author(author_id: int, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    services.delete_author(db, author_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Books


@app.get("/api/books", response_model=List[BookSchema])
def list_books(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return services.list_books(db)


@app.get("/api/books/search", response_model=List[BookSchema])
def search_books(
    query: Optional[str] = Query(None, min_length=1, max_length=255),
    genre: Optional[str] = Query(None, min_length=1, max_length=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return services.search_books(db, query=query, genre=genre)


@app.get("/api/books/search/simple", response_model=List[BookSchema])
def search_books_simple(
    title: Optional[str] = Query(None, max_length=255),
    genre: Optional[str] = Query(None, max_length=100),
    author_name: Optional[str] = Query(None, alias="authorName", max_length=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return services.search_books_simple(db, title=title, genre=genre, author_name=author_name)


@app.get("/api/books/external")
def search_external_books(
    query: str = Query(..., min_length=1),
    max_results: int = Query(10, alias="maxResults", ge=1, le=40),
    catalog: GoogleBooksClient = Depends(get_catalog),
    current_user: User = Depends(get_current_user),
):
    return services.search_external_books(catalog, query, max_results)


@app.post("/api/books/from-isbn", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
def create_book_from_isbn(
    request: ImportBookRequest,
    db: Session = Depends(get_db),
    catalog: GoogleBooksClient = Depends(get_catalog),
    current_user: User = Depends(admin_only),
):
    return services.create_book_from_isbn(db, catalog, request.isbn)


@app.get("/api/books/{book_id}", response_model=BookWithAuthorsSchema)
def get_book(book_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return services.get_book(db, book_id)


@app.post("/api/books", response_model=BookSchema, status_code=status.HTTP_201_CREATED)
def create_book(book: BookCreate, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.create_book(db, book.model_dump(exclude={"author_ids"}), author_ids=book.author_ids)


@app.patch("/api/books/{book_id}", response_model=BookSchema)
def update_book(
    book_id: int,
    book: BookUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    author_ids = book.author_ids if "author_ids" in book.model_fields_set else None
    values = book.model_dump(exclude_unset=True, exclude={"author_ids"})
    return services.update_book(db, book_id, values, author_ids=author_ids)


@app.delete("/api/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_book(book_id: int, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    services.delete_book(db, book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/books/{book_id}/enrich", response_model=BookSchema)
def enrich_book(
    book_id: int,
    db: Session = Depends(get_db),
    catalog: GoogleBooksClient = Depends(get_catalog),
    current_user: User = Depends(admin_only),
):
    return services.enrich_book(db, catalog, book_id)


# Loans


@app.post("/api/loans", response_model=LoanSchema, status_code=status.HTTP_201_CREATED)
def create_loan(loan: LoanCreate, db: Session = Depends(get_db), current_user: User = Depends(user_only)):
    return services.create_loan(db, loan.book_id, current_user.id, due_at=loan.due_at)


@app.get("/api/loans/my", response_model=List[LoanSchema])
def my_loans(db: Session = Depends(get_db), current_user: User = Depends(user_only)):
    return services.get_ongoing_loans(db, current_user.id)


@app.get("/api/loans/search", response_model=List[LoanSchema])
def search_loans(
    user_id: Optional[int] = Query(None, alias="userId"),
    book_id: Optional[int] = Query(None, alias="bookId"),
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    if user_id:
        return services.get_loans_by_user(db, user_id)
    if book_id:
        return services.get_loans_by_book(db, book_id)
    raise BadRequestError("Either userId or bookId query parameter is required")


@app.get("/api/loans", response_model=List[LoanSchema])
def ongoing_loans(db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.get_ongoing_loans(db)


@app.post("/api/loans/{loan_id}/return", response_model=LoanSchema)
def return_loan(loan_id: int, db: Session = Depends(get_db), current_user: User = Depends(user_only)):
    loan = services.get_loan(db, loan_id)
    if loan.user_id != current_user.id:
        raise ForbiddenError("You can only return your own loans")
    return services.return_loan(db, loan_id)


@app.get("/api/loans/{loan_id}", response_model=LoanSchema)
def get_loan(loan_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    loan = services.get_loan(db, loan_id)
    if current_user.role != UserRole.ADMIN and loan.user_id != current_user.id:
        raise ForbiddenError("You can only view your own loans")
    return loan


# Membership cards


@app.get("/api/membership-cards", response_model=List[MembershipCardSchema])
def list_cards(
    card_status: Optional[CardStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(admin_only),
):
    return services.list_cards(db, status=card_status)


@app.post("/api/membership-cards", response_model=MembershipCardSchema, status_code=status.HTTP_201_CREATED)
def create_card(card: MembershipCardCreate, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.create_card(db, card.serial_number)


@app.post("/api/membership-cards/{card_id}/archive", response_model=MembershipCardSchema)
def archive_card(card_id: int, db: Session = Depends(get_db), current_user: User = Depends(admin_only)):
    return services.archive_card(db, card_id)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("API_PORT", "8000"))
    logger.info(f"Starting library API on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from library_api.models import CardStatus, LoanStatus, UserRole

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# Users


class UserBase(CamelModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    first_name: str = Field(..., min_length=2, max_length=100)
    last_name: str = Field(..., min_length=2, max_length=100)


class UserCreate(UserBase):
    password: str = Field(..., min_length=8, max_length=128)


class UserUpdate(CamelModel):
    email: Optional[str] = Field(None, max_length=255, pattern=EMAIL_PATTERN)
    first_name: Optional[str] = Field(None, min_length=2, max_length=100)
    last_name: Optional[str] = Field(None, min_length=2, max_length=100)
    password: Optional[str] = Field(None, min_length=8, max_length=128)


# response models repeat the fields without the input rules
class UserSchema(CamelModel):
    id: int
    email: str
    first_name: str
    last_name: str
    role: UserRole
    created_at: datetime
    updated_at: datetime


# Auth


class LoginRequest(CamelModel):
    email: str
    password: str


class AuthResponse(CamelModel):
    access_token: str
    user: UserSchema


# Authors


class AuthorBase(CamelModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    birth_date: Optional[date] = None
    death_date: Optional[date] = None


class AuthorCreate(AuthorBase):
    pass


class AuthorUpdate(CamelModel):
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    birth_date: Optional[date] = None
    death_date: Optional[date] = None


class AuthorSchema(CamelModel):
    id: int
    first_name: Optional[str] = None
    last_name: str
    birth_date: Optional[date] = None
    death_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime


# Books


class BookBase(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    isbn10: Optional[str] = Field(None, pattern=r"^[0-9X]{10}$")
    isbn13: Optional[str] = Field(None, pattern=r"^[0-9]{13}$")
    genre: Optional[str] = Field(None, max_length=100)
    publication_date: Optional[date] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    external_source: Optional[str] = Field(None, max_length=100)
    external_id: Optional[str] = Field(None, max_length=255)
    external_metadata: Optional[dict[str, Any]] = None


class BookCreate(BookBase):
    author_ids: list[int] = []


class BookUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    isbn10: Optional[str] = Field(None, pattern=r"^[0-9X]{10}$")
    isbn13: Optional[str] = Field(None, pattern=r"^[0-9]{13}$")
    genre: Optional[str] = Field(None, max_length=100)
    publication_date: Optional[date] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    external_source: Optional[str] = Field(None, max_length=100)
    external_id: Optional[str] = Field(None, max_length=255)
    external_metadata: Optional[dict[str, Any]] = None
    author_ids: Optional[list[int]] = None


class BookSchema(CamelModel):
    id: int
    title: str
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    genre: Optional[str] = None
    publication_date: Optional[date] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    external_source: Optional[str] = None
    external_id: Optional[str] = None
    external_metadata: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class BookWithAuthorsSchema(BookSchema):
    authors: list[AuthorSchema] = []


class AuthorWithBooksSchema(AuthorSchema):
    books: list[BookSchema] = []


class ImportBookRequest(CamelModel):
    isbn: str = Field(..., min_length=10, max_length=17, pattern=r"^[0-9Xx\- ]+$")


# Loans


class LoanCreate(CamelModel):
    book_id: int
    due_at: Optional[datetime] = None


class LoanSchema(CamelModel):
    id: int
    user_id: int
    book_id: int
    status: LoanStatus
    borrowed_at: datetime
    due_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# Membership cards


class MembershipCardCreate(CamelModel):
    serial_number: str = Field(..., min_length=11, max_length=11)


class MembershipCardSchema(CamelModel):
    id: int
    serial_number: str
    status: CardStatus
    user_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

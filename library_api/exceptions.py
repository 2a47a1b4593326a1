import functools
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(LibraryException):
    status_code = 404

    def __init__(self, entity: str, key, field: str = "id"):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} with {field} {key} not found")


class ConflictError(LibraryException):
    status_code = 409


class BadRequestError(LibraryException):
    status_code = 400


class InvalidCredentialsError(LibraryException):
    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class ForbiddenError(LibraryException):
    status_code = 403


class NoCapacityError(LibraryException):
    """Raised when the membership card pool has no FREE card left."""

    status_code = 503

    def __init__(self, message: str = "No free membership cards available"):
        super().__init__(message)


class ExternalCatalogError(LibraryException):
    status_code = 502


class DatabaseError(LibraryException):
    def __init__(self, operation: str, details: str, service: str | None = None):
        self.operation = operation
        self.details = details
        self.service = service
        where = f"{service}.{operation}" if service else operation
        super().__init__(f"Database error during {where}: {details}")


class ConstraintViolationError(DatabaseError):
    """A unique constraint rejected a write; `constraint` names it."""

    def __init__(self, operation: str, constraint: str, details: str):
        self.constraint = constraint
        super().__init__(operation, details)


def with_error_handling(service: str, operation: str):
    """Log failures of a service operation and attach its context.

    Domain errors are re-raised unchanged. Storage errors are re-raised as
    DatabaseError naming the service and the operation.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except DatabaseError as e:
                logger.error(f"{service}: Error in {operation}: {e}")
                if e.service is None and not isinstance(e, ConstraintViolationError):
                    raise DatabaseError(e.operation, e.details, service=service) from e
                raise
            except LibraryException as e:
                logger.error(f"{service}: Error in {operation}: {e}")
                raise
            except SQLAlchemyError as e:
                logger.error(f"{service}: Error in {operation}: {e}")
                raise DatabaseError(operation, str(e), service=service) from e

        return wrapper

    return decorator


# Exception handlers
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Request validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request parameters. Please check your input.",
            "errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in exc.errors()
            ],
        },
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "The server encountered an unexpected error. Please contact support."
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please contact support."},
    )


async def database_exception_handler(request: Request, exc: DatabaseError):
    logger.error(f"Database error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "A database error occurred. Please contact support."},
    )


async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"Library error: {str(exc)}")
    headers = None
    if exc.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc)},
        headers=headers,
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(DatabaseError, database_exception_handler)
    app.add_exception_handler(LibraryException, library_exception_handler)

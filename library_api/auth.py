import logging
import os
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from dotenv import load_dotenv
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from library_api import crud
from library_api.exceptions import ForbiddenError, InvalidCredentialsError
from library_api.models import User, UserRole
from library_api.storage import SESSION_ROLE_KEY, apply_session_role, get_db

load_dotenv()

JWT_SECRET = os.getenv("JWT_SECRET", "library-api-development-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_IN_MINUTES = int(os.getenv("JWT_EXPIRES_IN_MINUTES", "60"))
BCRYPT_ROUNDS = 10
# bcrypt only reads the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], hashed_password.encode("utf-8"))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def create_access_token(user: User, expires_delta: timedelta | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=JWT_EXPIRES_IN_MINUTES))
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and expiry, returning the token claims."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidCredentialsError("Token has expired")
    except jwt.InvalidTokenError:
        raise InvalidCredentialsError("Invalid token")
    if "sub" not in payload:
        raise InvalidCredentialsError("Invalid token")
    return payload


def publish_session_role(db: Session, role: UserRole):
    """Expose the caller's role to row-level security policies on PostgreSQL.

    The role is kept on the session and re-applied at the start of every
    transaction it opens, since set_config is transaction-local.
    """
    db.info[SESSION_ROLE_KEY] = role.value
    if db.get_bind().dialect.name == "postgresql" and db.in_transaction():
        apply_session_role(db.connection(), role.value)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise InvalidCredentialsError("Not authenticated")
    payload = decode_access_token(credentials.credentials)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidCredentialsError("Invalid token")

    user = crud.get_user(db, user_id)
    if user is None:
        logger.warning(f"Token presented for missing user {user_id}")
        raise InvalidCredentialsError("User no longer exists")
    publish_session_role(db, user.role)
    return user


def require_roles(*roles: UserRole):
    def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise ForbiddenError("You do not have permission to perform this action")
        return current_user

    return checker

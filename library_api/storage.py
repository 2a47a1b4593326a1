import os

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("SQLALCHEMY_DATABASE_URL", "sqlite:///./library.db")
DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "10"))
SESSION_ROLE_KEY = "current_user_role"


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        db_engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        db_engine = create_engine(url, pool_size=DATABASE_POOL_SIZE, pool_pre_ping=True)

    if db_engine.dialect.name == "sqlite":
        # cascades and SET NULL on delete need foreign keys switched on
        @event.listens_for(db_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


def apply_session_role(connection, role: str):
    # is_local=true: the setting is reset when the transaction ends
    connection.execute(text("SELECT set_config('app.current_user_role', :role, true)"), {"role": role})


@event.listens_for(Session, "after_begin")
def _republish_session_role(session, transaction, connection):
    role = session.info.get(SESSION_ROLE_KEY)
    if role is not None and connection.dialect.name == "postgresql":
        apply_session_role(connection, role)


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

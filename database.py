"""Engine, session factory, and declarative base for the chat backend."""

from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.env import env_bool, env_str

load_dotenv()

TEST_DATABASE_URL: Optional[str] = env_str("TEST_DATABASE_URL")
DATABASE_URL: Optional[str] = env_str("DATABASE_URL") or TEST_DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")

# SQLite is accepted only when explicitly allowed (tests, local seeding).
ALLOW_NON_POSTGRES = env_bool("DATABASE_ALLOW_NON_POSTGRES", False)
IS_POSTGRES = DATABASE_URL.lower().startswith("postgresql")
if not IS_POSTGRES and not ALLOW_NON_POSTGRES:
    raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Got: {DATABASE_URL}")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=IS_POSTGRES)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base shared by every model in ``models``."""


def get_db() -> Iterator[Session]:
    """Per-request session for FastAPI ``Depends``."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for scripts: rolled back on error, always closed."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

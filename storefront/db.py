from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .core.config import (
    DATABASE_URL,
    DB_CONNECT_TIMEOUT_SECONDS,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE,
    DB_POOL_SIZE,
    DB_STATEMENT_TIMEOUT_MS,
)

is_sqlite = DATABASE_URL.startswith("sqlite")


def _connect_args() -> dict:
    if is_sqlite:
        # sqlite3 "timeout" bounds how long a writer waits on the database lock.
        return {"check_same_thread": False, "timeout": DB_CONNECT_TIMEOUT_SECONDS}
    if DATABASE_URL.startswith("postgresql"):
        return {
            "connect_timeout": DB_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}",
        }
    return {}


engine_kwargs = {
    "connect_args": _connect_args(),
    "pool_pre_ping": True,
    "pool_recycle": DB_POOL_RECYCLE,
}
if not is_sqlite:
    engine_kwargs.update(
        {
            "pool_size": DB_POOL_SIZE,
            "max_overflow": DB_MAX_OVERFLOW,
        }
    )

engine = create_engine(DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

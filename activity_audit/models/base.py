"""
Engine, sessions and the declarative base for activity records.

Request handlers read through get_db(). Writers never share a
request session: the interceptor's finalizer threads and the
retention reaper each open a short-lived session from SessionLocal
per write, so a slow request never holds a write open.
"""

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from activity_audit.config import get_settings

# Stable constraint names so migrations can drop what they create.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s",
}


def build_engine(url: str) -> Engine:
    """
    Engine for url.

    SQLite connections are handed between the request thread and the
    finalizer pool, so the same-thread check is turned off there.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(get_settings().DATABASE_URL)

# expire_on_commit=False keeps a committed record readable after
# its session closes; the store returns records past that point.
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def get_db():
    """Request-scoped session, closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

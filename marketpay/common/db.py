"""Engine, session factory and declarative base for the payments database."""

from sqlalchemy import JSON, Engine, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from marketpay.common.config import settings


def make_engine(dsn: str) -> Engine:
    """Postgres in production; an in-memory SQLite DSN shares one connection."""

    if dsn.startswith("sqlite"):
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Stores return ORM objects after commit; they must stay readable.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass

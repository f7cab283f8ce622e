"""Engine and session factories shared by all services."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from pogpp.common.config import settings


def build_engine(dsn: str) -> Engine:
    """Engine for `dsn`. In-memory SQLite keeps one shared connection."""

    if dsn.startswith("sqlite") and ":memory:" in dsn:
        return create_engine(dsn, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(dsn, pool_pre_ping=True)


def session_factory_for(bind: Engine) -> sessionmaker:
    # Services return ORM rows after commit, so attributes must stay loaded.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.postgres_dsn)
SessionLocal = session_factory_for(engine)

# JSONB on Postgres, plain JSON elsewhere.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass

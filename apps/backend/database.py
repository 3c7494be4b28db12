"""Engine, declarative base and session factories."""
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from apps.backend.config import get_settings


def get_database_url() -> str:
    """DATABASE_URL when set, otherwise assembled from the postgres_* settings."""
    s = get_settings()
    if s.database_url:
        return s.database_url
    return (
        f"postgresql://{s.postgres_user}:{s.postgres_password}@"
        f"{s.postgres_host}:{s.postgres_port}/{s.postgres_db}"
    )


@lru_cache
def get_engine():
    # one pool per process; the API, the rq worker and the scheduler each build their own
    return create_engine(get_database_url(), pool_pre_ping=True)


def get_test_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


class Base(DeclarativeBase):
    pass


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_element, _compiler, **_kw):
    return "JSON"


def get_session_factory(engine=None):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine or get_engine())

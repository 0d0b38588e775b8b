from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def _engine_options() -> dict:
    if settings.is_sqlite:
        # Sync endpoints run in FastAPI's threadpool.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }


engine = create_engine(settings.database_url, pool_pre_ping=True, **_engine_options())
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    """Request-scoped session; always closed, never committed here."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

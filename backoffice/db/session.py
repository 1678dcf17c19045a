from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from backoffice.core.config import settings


def _engine_kwargs(database_url: str) -> dict[str, object]:
    kwargs: dict[str, object] = {
        # Detect and recover from stale pooled connections.
        "pool_pre_ping": True,
    }
    if not database_url.lower().startswith("sqlite"):
        # Networked Postgres: bounded pool and connect timeout.
        kwargs.update(
            {
                "pool_size": settings.db_pool_size,
                "max_overflow": settings.db_max_overflow,
                "pool_timeout": settings.db_pool_timeout_seconds,
                "pool_recycle": settings.db_pool_recycle_seconds,
                "connect_args": {"connect_timeout": settings.db_connect_timeout_seconds},
            }
        )
    return kwargs


def build_engine(database_url: str) -> Engine:
    return create_engine(database_url, **_engine_kwargs(database_url))


# Product database: authors are read from here, never written.
core_engine = build_engine(settings.core_database_url)
# Admin-owned database: campaign tables and the leads list.
admin_engine = build_engine(settings.admin_database_url)

CoreSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=core_engine)
AdminSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=admin_engine)

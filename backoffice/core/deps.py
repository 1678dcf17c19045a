from collections.abc import Generator

from sqlalchemy.orm import Session

from backoffice.db.session import AdminSessionLocal, CoreSessionLocal


def get_admin_db() -> Generator[Session, None, None]:
    db = AdminSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_core_db() -> Generator[Session, None, None]:
    db = CoreSessionLocal()
    try:
        yield db
    finally:
        db.close()

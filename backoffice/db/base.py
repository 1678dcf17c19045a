from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Tables owned and migrated by the admin service."""


class ExternalBase(DeclarativeBase):
    """Tables owned by other systems; mapped read-only and never migrated here."""

    metadata = MetaData()

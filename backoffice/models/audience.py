from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.db.base import ExternalBase


class Author(ExternalBase):
    """Product users, read from the core database."""

    __tablename__ = "authors"

    author_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    preferred_locale: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    notification_preference: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    literary_age: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Lead(ExternalBase):
    """Prospects imported into the admin database by the lead pipeline."""

    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    mobile_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    last_email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    email_status: Mapped[str] = mapped_column(String(20), nullable=False, default="ready")

"""SQLAlchemy declarative base for the cold-store archive tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base for archive models (session_archives, session_archive_index)."""

    pass

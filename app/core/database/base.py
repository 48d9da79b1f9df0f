"""
SQLAlchemy declarative base and common model utilities.

Every table of the engine (modules, users, roles, permissions, grants,
overrides, audit logs) is registered on Base.metadata, which init_db and the
test fixtures use to create the schema.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import ulid


def generate_ulid() -> str:
    """Generate a new 26 character ULID string for a primary key."""
    return str(ulid.new())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        from app.core.database.base import Base

        class Module(Base, TimestampMixin):
            __tablename__ = "modules"

            id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
            key: Mapped[str] = mapped_column(String(100))
    """
    pass


class TimestampMixin:
    """
    created_at / updated_at filled in by the database.

    Both are server defaults, so they are expired after a flush; routes
    refresh a row before serialising it.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

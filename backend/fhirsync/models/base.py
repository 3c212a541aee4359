from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, func, inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all sync engine tables."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


def apply_column_defaults(instance: Base) -> None:
    """Populate Python-side column defaults on an unflushed instance.

    SQLAlchemy only applies ``default=`` at flush time; stores that never
    flush (the in-memory store) call this to see the same values.
    """
    mapper = inspect(instance).mapper
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        if getattr(instance, attr.key, None) is not None or column.default is None:
            continue
        default = column.default
        if default.is_scalar:
            setattr(instance, attr.key, default.arg)
        elif default.is_callable:
            setattr(instance, attr.key, default.arg(None))


def model_to_dict(instance: Base) -> dict[str, Any]:
    """Return column values of a model instance keyed by attribute name."""
    mapper = inspect(instance).mapper
    return {attr.key: getattr(instance, attr.key) for attr in mapper.column_attrs}

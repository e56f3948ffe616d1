from sqlalchemy.sql import func
from sqlalchemy import Column, DateTime, Enum


class CreatedAtMixin:
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
class UpdatedAtMixin:
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


def enum_type(enum_cls, name: str) -> Enum:
    """Store a str-Enum by value as VARCHAR + CHECK, same DDL on SQLite and Postgres."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )

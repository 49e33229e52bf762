"""Declarative base and metadata utilities."""
from __future__ import annotations

import enum

from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Base model with naming conventions."""

    __abstract__ = True

    @declared_attr.directive
    def __tablename__(cls) -> str:  # type: ignore[misc]
        return cls.__name__.lower()


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (e.g. ``in-progress``) rather than member names."""

    return [member.value for member in enum_cls]

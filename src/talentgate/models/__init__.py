"""SQLAlchemy models."""

from talentgate.models.base import Base, TimestampMixin

__all__ = [
    "Base",
    "TimestampMixin",
]
